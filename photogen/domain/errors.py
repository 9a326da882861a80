from typing import Any, Optional

class TrackerError(Exception):
    """Base exception for generation tracker errors."""
    pass

class ApiError(TrackerError):
    """Non-2xx response or transport failure from the generation service."""

    def __init__(self, status_code: Optional[int], messages: list[str], payload: Any = None):
        self.status_code = status_code
        self.messages = messages
        self.payload = payload
        super().__init__(", ".join(messages) if messages else "Request failed")

class JobSubmissionError(TrackerError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

class JobExecutionError(TrackerError):
    def __init__(self, job_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Execute failed for job {job_id}: {cause}")
        self.job_id = job_id
        self.cause = cause

class ChannelError(TrackerError):
    def __init__(self, message: str, attempt: int = 0, final: bool = False, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempt = attempt
        self.final = final
        self.cause = cause

class ItemRetryError(TrackerError):
    def __init__(self, item_type: str, cause: Optional[BaseException] = None):
        super().__init__(f"Retry failed for {item_type}: {cause}")
        self.item_type = item_type
        self.cause = cause

class GenerationTimeoutError(TrackerError):
    def __init__(self, scope: str, seconds: float):
        super().__init__(f"Generation {scope} timed out after {seconds:g}s")
        self.scope = scope
        self.seconds = seconds

class UnknownHandleError(TrackerError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} is not tracked")

class UnknownItemError(TrackerError):
    def __init__(self, job_id, item_type):
        super().__init__(f"Job {job_id} has no item {item_type!r}")

class InvalidItemStateError(TrackerError):
    def __init__(self, item_type, current_status, action):
        super().__init__(f"Cannot {action} {item_type} while {current_status}")

class InvalidJobStateError(TrackerError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class JobNotFoundError(TrackerError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
