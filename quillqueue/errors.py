"""Exceptions raised across the pipeline."""

class PipelineError(Exception):
    pass

class AIClientError(PipelineError):
    """The AI service failed (transport error, rate limit, overloaded)."""

class AITimeoutError(AIClientError):
    """The AI call did not answer within the configured timeout."""

class UnusableResponse(PipelineError):
    """The model answered but nothing usable could be extracted."""

class JobNotFound(PipelineError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id

class InvalidTransition(PipelineError):
    def __init__(self, job_id: str, action: str, status: str | None):
        super().__init__(f"cannot {action} job {job_id} in status {status}")
        self.job_id = job_id
        self.action = action
        self.status = status

class InvalidSelection(PipelineError):
    pass

class JobFailedError(PipelineError):
    def __init__(self, job_id: str, error: str | None):
        super().__init__(f"job {job_id} failed: {error or 'unknown error'}")
        self.job_id = job_id
        self.error = error

class JobTimeoutError(PipelineError):
    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"job {job_id} did not finish within {timeout}s")
        self.job_id = job_id
        self.timeout = timeout
