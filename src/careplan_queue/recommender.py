"""HTTP client for the care-plan recommender service."""

from typing import Any

import httpx

from careplan_queue.models import RecommendationJob
from careplan_queue.settings import Settings

RECOMMEND_PATH = "api/v1/recommend"


class RecommenderError(Exception):
    pass


class RecommenderUnavailableError(RecommenderError):
    pass


class RecommenderStatusError(RecommenderError):
    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"Recommender returned HTTP {status_code}")
        self.status_code = status_code
        self.text = text


class RecommenderInvalidResponseError(RecommenderError):
    pass


def create_recommender_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=settings.recommender_base_url, timeout=settings.recommender_timeout)


def build_recommend_payload(job: RecommendationJob) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "session_id": job.session_id,
        "patient_id": job.patient_id,
        "job_type": job.job_type,
        "input_data": job.input_data or {},
    }


async def request_recommendation(client: httpx.AsyncClient, job: RecommendationJob) -> dict[str, Any]:
    """Ask the recommender for a job's recommendations and return the JSON body as results."""
    try:
        response = await client.post(RECOMMEND_PATH, json=build_recommend_payload(job))
    except httpx.RequestError as e:
        raise RecommenderUnavailableError(str(e)) from e

    if response.status_code >= 400:
        raise RecommenderStatusError(response.status_code, response.text[:500])

    try:
        body = response.json()
    except ValueError as e:
        raise RecommenderInvalidResponseError("Recommender returned invalid JSON") from e

    if not isinstance(body, dict):
        raise RecommenderInvalidResponseError("Recommender response must be a JSON object")
    return body
