from enum import StrEnum, auto

class JobStatus(StrEnum):
    DRAFT = auto()        # Created, prompts not merged yet
    PENDING = auto()      # Waiting on the service
    MERGED = auto()       # Prompts merged, items known
    PROCESSING = auto()   # Execute accepted, items being generated
    COMPLETED = auto()    # Every item terminal, at least one completed
    FAILED = auto()       # Execute failed, or every item failed

class ItemStatus(StrEnum):
    PENDING = auto()
    PROCESSING = auto()
    COMPLETED = auto()
    FAILED = auto()

TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

class UpdateSource(StrEnum):
    EXECUTE = auto()
    POLL = auto()
    PUSH = auto()
    RETRY = auto()
    TIMEOUT = auto()
