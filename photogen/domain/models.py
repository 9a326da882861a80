from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from photogen.domain.states import ItemStatus, JobStatus, TERMINAL_ITEM_STATUSES

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class VisualItem:
    type: str
    status: ItemStatus = ItemStatus.PENDING
    image_url: Optional[str] = None
    error: Optional[str] = None
    generated_at: Optional[datetime] = None
    prompt: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

@dataclass(frozen=True)
class JobHandle:
    job_id: str

@dataclass
class GenerationRequest:
    product_id: str
    collection_id: str
    shots: list[str]
    generation_type: str = "product_visuals"
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    custom_instructions: Optional[str] = None
    # Per-shot knobs forwarded to merge, e.g. {"solo": {"subject": "kid"}}
    shot_options: dict[str, dict[str, Any]] = field(default_factory=dict)

    def merge_options(self) -> dict[str, Any]:
        shot_options = {
            shot: {"enabled": True, **self.shot_options.get(shot, {})}
            for shot in self.shots
        }
        options: dict[str, Any] = {"shot_options": shot_options}
        if self.custom_instructions:
            options["custom_instructions"] = self.custom_instructions
        if self.resolution:
            options["resolution"] = self.resolution
        return options

@dataclass
class JobProgress:
    """One poll response: the service's view of the job."""
    status: str
    items: list[VisualItem]
    progress_percent: float = 0.0
    completed: int = 0
    total: int = 0

@dataclass
class GenerationJob:
    id: str
    status: JobStatus
    items: list[VisualItem]
    progress_percent: float = 0.0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def snapshot(self) -> "GenerationJob":
        return replace(self, items=list(self.items))
