from careplan_queue.models.recommendation_jobs import RecommendationJob

__all__ = [
    "RecommendationJob",
]
