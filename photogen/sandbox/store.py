"""
In-memory stand-in for the generation service.

Generations live in a dict; execute/retry spawn tasks that finish one visual
per `step_seconds` and announce each change through `notify`, the same
events the real service pushes over Socket.IO.
"""
import asyncio
import io
import logging
import uuid
import zipfile
from typing import Any, Awaitable, Callable, Optional

from photogen.api.schemas import (
    CreateGenerationIn,
    GenerationOut,
    MergeIn,
    ProgressResponse,
    VisualOutput,
    prompts_by_type,
)
from photogen.domain.errors import JobNotFoundError, InvalidJobStateError
from photogen.domain.models import utcnow
from photogen.domain.states import ItemStatus, JobStatus

logger = logging.getLogger(__name__)

Notify = Callable[[str, dict, str], Awaitable[None]]

DEFAULT_SHOTS = ["main_visual", "lifestyle"]

async def _no_notify(event: str, data: dict, room: str):
    pass

class SandboxStore:
    def __init__(
        self,
        step_seconds: float = 1.0,
        fail_types: Optional[list[str]] = None,
        auto_run: bool = True,
        notify: Notify = _no_notify,
    ):
        self.step_seconds = step_seconds
        self.fail_types = set(fail_types or [])
        self.auto_run = auto_run
        self.notify = notify
        self.generations: dict[str, GenerationOut] = {}
        self._attempts: dict[tuple[str, str], int] = {}
        self._tasks: set[asyncio.Task] = set()

    def get(self, gen_id: str) -> GenerationOut:
        gen = self.generations.get(gen_id)
        if gen is None:
            raise JobNotFoundError(gen_id)
        return gen

    def create(self, body: CreateGenerationIn) -> GenerationOut:
        now = utcnow()
        gen = GenerationOut(
            id=uuid.uuid4().hex,
            user_id="sandbox-user",
            product_id=body.product_id,
            collection_id=body.collection_id,
            generation_type=body.generation_type,
            status=JobStatus.DRAFT,
            metadata={"resolution": body.resolution, "aspect_ratio": body.aspect_ratio},
            created_at=now,
            updated_at=now,
        )
        self.generations[gen.id] = gen
        return gen

    def merge(self, gen_id: str, body: MergeIn) -> GenerationOut:
        gen = self.get(gen_id)
        shots = [name for name, opts in body.shot_options.items() if opts.get("enabled", True)]
        suffix = f" {body.custom_instructions}" if body.custom_instructions else ""
        prompts = {
            shot: f"{shot.replace('_', ' ')} photo of product {gen.product_id}{suffix}"
            for shot in shots or DEFAULT_SHOTS
        }
        gen.merged_prompts = {"prompts_by_type": prompts}
        gen.visual_outputs = [VisualOutput(type=t, prompt=p) for t, p in prompts.items()]
        gen.status = JobStatus.MERGED
        gen.updated_at = utcnow()
        return gen

    def update_prompts(self, gen_id: str, prompts: dict[str, Any]) -> GenerationOut:
        gen = self.get(gen_id)
        if gen.status not in (JobStatus.MERGED, JobStatus.DRAFT):
            raise InvalidJobStateError(gen.status, "prompt edit")
        gen.merged_prompts = prompts
        by_type = prompts_by_type(prompts)
        gen.visual_outputs = [VisualOutput(type=t, prompt=p) for t, p in by_type.items()]
        gen.updated_at = utcnow()
        return gen

    def execute(self, gen_id: str) -> GenerationOut:
        gen = self.get(gen_id)
        if gen.status != JobStatus.MERGED:
            raise InvalidJobStateError(gen.status, JobStatus.PROCESSING)
        gen.status = JobStatus.PROCESSING
        for visual in gen.visual_outputs:
            visual.status = ItemStatus.PROCESSING
        gen.updated_at = utcnow()
        if self.auto_run:
            self._spawn(self._run(gen_id, list(range(len(gen.visual_outputs)))))
        return gen

    def retry(self, gen_id: str, index: int) -> GenerationOut:
        gen = self.get(gen_id)
        if not 0 <= index < len(gen.visual_outputs):
            raise IndexError(index)
        visual = gen.visual_outputs[index]
        if visual.status != ItemStatus.FAILED:
            raise InvalidJobStateError(visual.status, ItemStatus.PROCESSING)
        gen.visual_outputs[index] = VisualOutput(type=visual.type, prompt=visual.prompt, status=ItemStatus.PROCESSING)
        gen.status = JobStatus.PROCESSING
        gen.updated_at = utcnow()
        if self.auto_run:
            self._spawn(self._run(gen_id, [index]))
        return gen

    def reset(self, gen_id: str) -> GenerationOut:
        gen = self.get(gen_id)
        gen.status = JobStatus.DRAFT
        gen.merged_prompts = None
        gen.visual_outputs = []
        gen.zip_url = None
        gen.updated_at = utcnow()
        for key in [k for k in self._attempts if k[0] == gen_id]:
            del self._attempts[key]
        return gen

    def progress(self, gen_id: str) -> ProgressResponse:
        gen = self.get(gen_id)
        total = len(gen.visual_outputs)
        done = sum(1 for v in gen.visual_outputs if v.status in (ItemStatus.COMPLETED, ItemStatus.FAILED))
        return ProgressResponse(
            status=gen.status,
            progress=round(done / total * 100, 1) if total else 0.0,
            completed=sum(1 for v in gen.visual_outputs if v.status == ItemStatus.COMPLETED),
            total=total,
            visuals=gen.visual_outputs,
            elapsed_seconds=(utcnow() - gen.created_at).total_seconds() if gen.created_at else None,
        )

    def archive(self, gen_id: str) -> bytes:
        gen = self.get(gen_id)
        done = [v for v in gen.visual_outputs if v.status == ItemStatus.COMPLETED]
        if not done:
            raise InvalidJobStateError(gen.status, "download")
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            for visual in done:
                zf.writestr(f"{visual.type}.txt", visual.image_url or "")
        return buf.getvalue()

    async def finish_visual(self, gen_id: str, index: int):
        """Completes (or fails, per fail_types on first attempt) one visual and announces it."""
        gen = self.get(gen_id)
        visual = gen.visual_outputs[index]
        key = (gen_id, visual.type)
        self._attempts[key] = self._attempts.get(key, 0) + 1
        now = utcnow()
        if visual.type in self.fail_types and self._attempts[key] == 1:
            updated = VisualOutput(
                type=visual.type, prompt=visual.prompt, status=ItemStatus.FAILED,
                error="Sandbox generation failed", generated_at=now,
            )
        else:
            updated = VisualOutput(
                type=visual.type, prompt=visual.prompt, status=ItemStatus.COMPLETED,
                image_url=f"https://sandbox.local/{gen_id}/{visual.type}.png", generated_at=now,
            )
        gen.visual_outputs[index] = updated
        gen.updated_at = now

        await self.notify("visual_completed", {
            "generationId": gen_id,
            "index": index,
            **updated.model_dump(mode="json", exclude={"prompt"}),
        }, gen_id)

        progress = self.progress(gen_id)
        await self.notify("generation_progress", {
            "generationId": gen_id,
            "completed": progress.completed,
            "total": progress.total,
            "progress_percent": progress.progress,
        }, gen_id)

        statuses = [v.status for v in gen.visual_outputs]
        if all(s in (ItemStatus.COMPLETED, ItemStatus.FAILED) for s in statuses):
            gen.status = JobStatus.COMPLETED if ItemStatus.COMPLETED in statuses else JobStatus.FAILED
            await self.notify("generation_complete", {
                "generationId": gen_id,
                "status": gen.status,
                "visuals": [v.model_dump(mode="json") for v in gen.visual_outputs],
            }, gen_id)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, gen_id: str, indexes: list[int]):
        try:
            for index in indexes:
                await asyncio.sleep(self.step_seconds)
                await self.finish_visual(gen_id, index)
        except Exception as e:
            logger.error(f"Sandbox run failed for {gen_id}: {e}", exc_info=True)

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
