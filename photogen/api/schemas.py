from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from photogen.domain.models import JobProgress, VisualItem
from photogen.domain.states import ItemStatus

# Keys of a merged prompt set that are not per-shot prompts
_NON_SHOT_KEYS = {"prompts_by_type", "style_reference", "secondary_visuals"}

def prompts_by_type(merged_prompts: Optional[dict[str, Any]]) -> dict[str, str]:
    """
    Extracts the ordered {type: prompt} mapping from a merged prompt set.
    Newer services send `prompts_by_type`; older ones put prompts at the top level.
    """
    if not merged_prompts:
        return {}
    nested = merged_prompts.get("prompts_by_type")
    if isinstance(nested, dict) and nested:
        return {str(k): str(v) for k, v in nested.items()}
    return {
        k: v for k, v in merged_prompts.items()
        if k not in _NON_SHOT_KEYS and isinstance(v, str)
    }

class VisualOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    status: ItemStatus = ItemStatus.PENDING
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    prompt: Optional[str] = None
    generated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("generated_at", "generatedAt"))
    error: Optional[str] = None

    def to_domain(self) -> VisualItem:
        # Fields only make sense in their matching status
        return VisualItem(
            type=self.type,
            status=self.status,
            image_url=self.image_url if self.status == ItemStatus.COMPLETED else None,
            error=self.error if self.status == ItemStatus.FAILED else None,
            generated_at=self.generated_at,
            prompt=self.prompt,
        )

class GenerationOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    collection_id: Optional[str] = None
    generation_type: Optional[str] = None
    status: str
    merged_prompts: Optional[dict[str, Any]] = None
    visual_outputs: list[VisualOutput] = []
    zip_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def items(self) -> list[VisualItem]:
        return [v.to_domain() for v in self.visual_outputs]

class MergeResponse(BaseModel):
    generation_id: str
    merged_prompts: dict[str, Any]
    status: str
    merged_at: Optional[datetime] = None

class ExecuteResponse(BaseModel):
    success: bool = True
    generation: GenerationOut
    stats: dict[str, int] = {}

class ProgressResponse(BaseModel):
    status: str
    progress: float = 0.0
    completed: int = 0
    total: int = 0
    visuals: list[VisualOutput] = []
    elapsed_seconds: Optional[float] = None
    estimated_remaining_seconds: Optional[float] = None

    def to_domain(self) -> JobProgress:
        return JobProgress(
            status=self.status,
            items=[v.to_domain() for v in self.visuals],
            progress_percent=self.progress,
            completed=self.completed,
            total=self.total,
        )

class PromptsResponse(BaseModel):
    generation_id: str
    merged_prompts: dict[str, Any] = {}
    product_json: Optional[Any] = None
    da_json: Optional[Any] = None
    can_edit: bool = False

class UpdatePromptsResponse(BaseModel):
    merged_prompts: dict[str, Any]
    updated_at: Optional[datetime] = None

# --- Request bodies ---

class CreateGenerationIn(BaseModel):
    product_id: str
    collection_id: str
    generation_type: str = "product_visuals"
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None

class MergeIn(BaseModel):
    custom_instructions: Optional[str] = None
    shot_options: dict[str, dict[str, Any]] = {}
    resolution: Optional[str] = None

class RetryIn(BaseModel):
    model: Optional[str] = None

class UpdatePromptsIn(BaseModel):
    prompts: dict[str, Any]

# --- Push channel payloads ---

class ItemEventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Optional[str] = None
    index: Optional[int] = None
    # visual_completed events usually omit status
    status: ItemStatus = ItemStatus.COMPLETED
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    error: Optional[str] = None
    generated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("generated_at", "generatedAt"))

class ProgressEventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    completed: int = Field(default=0, validation_alias=AliasChoices("completed", "completedCount"))
    total: int = Field(default=0, validation_alias=AliasChoices("total", "totalCount"))
    progress_percent: Optional[float] = None

class CompleteEventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    visuals: list[VisualOutput] = Field(default=[], validation_alias=AliasChoices("visuals", "items"))
