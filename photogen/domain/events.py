"""
Message types flowing through the tracker.

Two families:
- Pushed*: what the push channel hands to the tracker after decoding a server event.
- Tracker events: what observers receive. A single union type is dispatched
  through one handler instead of string-named callbacks.
"""
from dataclasses import dataclass
from typing import Optional, Union

from photogen.domain.errors import ChannelError, JobExecutionError
from photogen.domain.models import GenerationJob, VisualItem

# --- Push channel -> tracker ---

@dataclass(frozen=True)
class PushedItem:
    item: VisualItem
    # Some servers only send the position; the tracker resolves it to a type.
    index: Optional[int] = None

@dataclass(frozen=True)
class PushedProgress:
    completed: int
    total: int
    progress_percent: Optional[float] = None

@dataclass(frozen=True)
class PushedJob:
    status: str
    items: tuple[VisualItem, ...]

PushMessage = Union[PushedItem, PushedProgress, PushedJob]

# --- Tracker -> observers ---

@dataclass(frozen=True)
class ItemUpdated:
    job_id: str
    item: VisualItem

@dataclass(frozen=True)
class Progress:
    job_id: str
    completed: int
    total: int

@dataclass(frozen=True)
class Complete:
    job: GenerationJob

@dataclass(frozen=True)
class ConnectionFailed:
    job_id: str
    error: ChannelError

@dataclass(frozen=True)
class ExecutionFailed:
    job_id: str
    error: JobExecutionError

TrackerEvent = Union[ItemUpdated, Progress, Complete, ConnectionFailed, ExecutionFailed]
