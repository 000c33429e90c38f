class QueueError(Exception):
    pass


class JobValidationError(QueueError, ValueError):
    pass


class JobNotFoundError(QueueError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Recommendation job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(QueueError):
    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class StoreUnavailableError(QueueError):
    pass
