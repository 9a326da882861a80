import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional

from photogen.domain.errors import (
    GenerationTimeoutError,
    InvalidItemStateError,
    InvalidJobStateError,
    ItemRetryError,
    JobExecutionError,
    JobSubmissionError,
    UnknownHandleError,
    UnknownItemError,
)
from photogen.domain.events import (
    Complete,
    ConnectionFailed,
    ExecutionFailed,
    ItemUpdated,
    Progress,
    PushedItem,
    PushedJob,
    PushedProgress,
    PushMessage,
    TrackerEvent,
)
from photogen.domain.models import GenerationJob, GenerationRequest, JobHandle, VisualItem, utcnow
from photogen.domain.reconcile import Reconciler
from photogen.domain.states import ItemStatus, JobStatus, TERMINAL_JOB_STATUSES, UpdateSource
from photogen.metrics import ITEM_UPDATES, JOB_DURATION, JOBS_OBSERVED, POLL_FAILURES, TIMEOUTS
from photogen.scheduler.timers import Deadline, Ticker
from photogen.settings import Settings, settings as default_settings
from tracker_sdk.channel import PushChannel

logger = logging.getLogger(__name__)

EventHandler = Callable[[TrackerEvent], Any]
ChannelFactory = Callable[[str, Callable, Callable], Any]

@dataclass
class _TrackedJob:
    job: GenerationJob
    reconciler: Reconciler
    observers: list[EventHandler] = field(default_factory=list)

    ticker: Optional[Ticker] = None
    channel: Any = None
    deadline: Optional[Deadline] = None
    retry_deadlines: dict[str, Deadline] = field(default_factory=dict)

    observing: bool = False
    closed: bool = False
    completed: bool = False  # Complete already emitted
    terminal_count: int = 0
    executed_at: Optional[float] = None

class GenerationTracker:
    """
    Drives generation jobs from submission to a terminal state.

    `api` is anything with the JobApiClient coroutine methods used here
    (create_job, merge_prompts, execute_job, get_job_snapshot, retry_item).
    Each job gets its own poll ticker, push channel and deadlines; they are
    released when the job turns terminal or is cancelled, and re-acquired
    for an item retry. All state changes run on the event loop thread.
    """

    def __init__(self, api, settings: Optional[Settings] = None, channel_factory: Optional[ChannelFactory] = None):
        self.api = api
        self.settings = settings or default_settings
        if channel_factory is None and self.settings.PUSH_ENABLED:
            def channel_factory(job_id, on_message, on_error):
                return PushChannel.from_settings(self.settings, job_id, on_message, on_error)
        self.channel_factory = channel_factory
        self._jobs: dict[str, _TrackedJob] = {}
        self._teardowns: set[asyncio.Task] = set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def _get(self, handle: JobHandle) -> _TrackedJob:
        tracked = self._jobs.get(handle.job_id)
        if tracked is None:
            raise UnknownHandleError(handle.job_id)
        return tracked

    # --- Public operations ---

    async def submit(self, request: GenerationRequest) -> JobHandle:
        """
        Creates the job and merges its prompts. The merged prompt set fixes
        the job's items, in service order, each pending.
        Raises JobSubmissionError and keeps nothing if either call fails.
        """
        if not request.shots:
            raise JobSubmissionError("Shot selection is empty")

        try:
            job_id = await self.api.create_job(
                request.product_id,
                request.collection_id,
                generation_type=request.generation_type,
                resolution=request.resolution,
                aspect_ratio=request.aspect_ratio,
            )
        except Exception as e:
            raise JobSubmissionError(f"Failed to create generation: {e}", cause=e) from e

        try:
            prompts = await self.api.merge_prompts(job_id, request.merge_options())
        except Exception as e:
            raise JobSubmissionError(f"Failed to merge prompts for {job_id}: {e}", cause=e) from e

        if not prompts:
            raise JobSubmissionError(f"Merge for {job_id} returned no prompts")

        items = [VisualItem(type=item_type, prompt=prompt) for item_type, prompt in prompts.items()]
        job = GenerationJob(id=job_id, status=JobStatus.MERGED, items=items)
        self._jobs[job_id] = _TrackedJob(job=job, reconciler=Reconciler(items))
        logger.info("Submitted job %s with items %s", job_id, list(prompts))
        return JobHandle(job_id)

    async def execute(self, handle: JobHandle) -> None:
        """
        Starts generation. Never raises for service failures: those move the
        job to failed and emit one ExecutionFailed event.
        """
        tracked = self._get(handle)
        job = tracked.job
        if job.status != JobStatus.MERGED:
            raise InvalidJobStateError(job.status, JobStatus.PROCESSING)

        try:
            items = await self.api.execute_job(job.id)
        except Exception as e:
            if tracked.closed:
                return
            error = JobExecutionError(job.id, e)
            logger.error(f"Job {job.id} failed to start: {e}")
            job.status = JobStatus.FAILED
            job.updated_at = utcnow()
            self._emit(tracked, ExecutionFailed(job.id, error))
            return

        if tracked.closed:
            return

        job.status = JobStatus.PROCESSING
        job.updated_at = utcnow()
        tracked.executed_at = asyncio.get_running_loop().time()
        tracked.deadline = Deadline(
            self.settings.JOB_TIMEOUT_SECONDS,
            lambda: self._on_job_timeout(tracked),
            name=f"job-{job.id}",
        )
        tracked.deadline.start()
        self._observe(tracked)
        logger.info("Job %s executing", job.id)
        self._apply(tracked, items, UpdateSource.EXECUTE)

    def subscribe(self, handle: JobHandle, observer: EventHandler) -> Callable[[], None]:
        """Registers `observer` for this job's events. Returns an unsubscribe function."""
        tracked = self._get(handle)
        tracked.observers.append(observer)

        def unsubscribe():
            if observer in tracked.observers:
                tracked.observers.remove(observer)
        return unsubscribe

    async def retry_item(self, handle: JobHandle, item_type: str) -> None:
        tracked = self._get(handle)
        job_id = tracked.job.id
        reconciler = tracked.reconciler

        if item_type not in reconciler:
            raise UnknownItemError(job_id, item_type)
        held = reconciler.get(item_type)
        if held.status != ItemStatus.FAILED:
            raise InvalidItemStateError(item_type, held.status, "retry")

        index = reconciler.index_of(item_type)
        self._publish(tracked, [reconciler.reset_for_retry(item_type)])

        try:
            items = await self.api.retry_item(job_id, index)
        except Exception as e:
            if tracked.closed:
                return
            error = ItemRetryError(item_type, e)
            logger.warning("Job %s: %s", job_id, error)
            self._publish(tracked, reconciler.force_fail(str(error), [item_type]), UpdateSource.RETRY)
            return

        if tracked.closed:
            return

        previous = tracked.retry_deadlines.pop(item_type, None)
        if previous:
            previous.cancel()
        deadline = Deadline(
            self.settings.RETRY_TIMEOUT_SECONDS,
            lambda: self._on_retry_timeout(tracked, item_type),
            name=f"retry-{job_id}-{item_type}",
        )
        tracked.retry_deadlines[item_type] = deadline
        deadline.start()
        self._observe(tracked)
        logger.info("Job %s retrying %s", job_id, item_type)
        self._apply(tracked, items, UpdateSource.RETRY)

    def cancel(self, handle: JobHandle) -> None:
        """
        Stops observing the job. Synchronous and idempotent: once this
        returns no observer is called again for the handle.
        """
        tracked = self._jobs.pop(handle.job_id, None)
        if tracked is None or tracked.closed:
            return
        tracked.closed = True
        self._release(tracked)
        tracked.observers.clear()
        logger.info("Stopped tracking job %s", handle.job_id)

    def snapshot(self, handle: JobHandle) -> GenerationJob:
        return self._get(handle).job.snapshot()

    async def aclose(self):
        for job_id in list(self._jobs):
            self.cancel(JobHandle(job_id))
        if self._teardowns:
            await asyncio.gather(*self._teardowns, return_exceptions=True)

    # --- Observation resources ---

    def _observe(self, tracked: _TrackedJob):
        job_id = tracked.job.id
        if tracked.ticker is None:
            tracked.ticker = Ticker(
                self.settings.POLL_INTERVAL_SECONDS,
                lambda: self._poll(tracked),
                name=f"poll-{job_id}",
            )
        tracked.ticker.start()

        if tracked.channel is None and self.channel_factory is not None:
            tracked.channel = self.channel_factory(
                job_id,
                lambda message: self._on_push(tracked, message),
                lambda error: self._on_channel_error(tracked, error),
            )
            tracked.channel.start()

        if not tracked.observing:
            tracked.observing = True
            JOBS_OBSERVED.inc()

    def _release(self, tracked: _TrackedJob):
        if tracked.ticker:
            tracked.ticker.stop()
        if tracked.deadline:
            tracked.deadline.cancel()
            tracked.deadline = None
        for deadline in tracked.retry_deadlines.values():
            deadline.cancel()
        tracked.retry_deadlines.clear()

        if tracked.channel is not None:
            channel = tracked.channel
            tracked.channel = None
            channel.close()
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # Called after the loop shut down; close() already stopped delivery
                logger.debug("No running loop to tear down channel for job=%s", tracked.job.id)
            else:
                task = loop.create_task(channel.aclose())
                self._teardowns.add(task)
                task.add_done_callback(self._teardowns.discard)

        if tracked.observing:
            tracked.observing = False
            JOBS_OBSERVED.dec()

    # --- Update sources ---

    async def _poll(self, tracked: _TrackedJob):
        try:
            progress = await self.api.get_job_snapshot(tracked.job.id)
        except Exception as e:
            POLL_FAILURES.inc()
            logger.warning("Poll failed for job=%s: %s", tracked.job.id, e)
            return
        if tracked.closed:
            return
        tracked.job.progress_percent = progress.progress_percent
        self._apply(tracked, progress.items, UpdateSource.POLL)

    def _on_push(self, tracked: _TrackedJob, message: PushMessage):
        if tracked.closed:
            return
        if isinstance(message, PushedItem):
            item = message.item
            if not item.type:
                item_type = tracked.reconciler.type_at(message.index) if message.index is not None else None
                if item_type is None:
                    logger.warning("Job %s: pushed item index %s out of range", tracked.job.id, message.index)
                    return
                item = replace(item, type=item_type)
            self._apply(tracked, [item], UpdateSource.PUSH)
        elif isinstance(message, PushedJob):
            self._apply(tracked, message.items, UpdateSource.PUSH)
        elif isinstance(message, PushedProgress):
            # Counts are derived locally; only the percentage is informational
            if message.progress_percent is not None:
                tracked.job.progress_percent = message.progress_percent

    def _on_channel_error(self, tracked: _TrackedJob, error):
        if tracked.closed:
            return
        self._emit(tracked, ConnectionFailed(tracked.job.id, error))

    def _on_job_timeout(self, tracked: _TrackedJob):
        tracked.deadline = None
        if tracked.closed or tracked.completed:
            return
        TIMEOUTS.labels(scope="job").inc()
        error = GenerationTimeoutError("job", self.settings.JOB_TIMEOUT_SECONDS)
        logger.warning("Job %s: %s, failing unfinished items", tracked.job.id, error)
        self._publish(tracked, tracked.reconciler.force_fail(str(error)), UpdateSource.TIMEOUT)

    def _on_retry_timeout(self, tracked: _TrackedJob, item_type: str):
        tracked.retry_deadlines.pop(item_type, None)
        if tracked.closed or tracked.reconciler.get(item_type).is_terminal:
            return
        TIMEOUTS.labels(scope="retry").inc()
        error = GenerationTimeoutError(f"retry of {item_type}", self.settings.RETRY_TIMEOUT_SECONDS)
        logger.warning("Job %s: %s", tracked.job.id, error)
        self._publish(tracked, tracked.reconciler.force_fail(str(error), [item_type]), UpdateSource.TIMEOUT)

    # --- Reconciliation + notification ---

    def _apply(self, tracked: _TrackedJob, candidates: Iterable[VisualItem], source: UpdateSource):
        if tracked.closed:
            return
        result = tracked.reconciler.apply_update(candidates)
        if result.changed:
            ITEM_UPDATES.labels(source=source, outcome="applied").inc(len(result.changed))
        if result.discarded:
            ITEM_UPDATES.labels(source=source, outcome="discarded").inc(result.discarded)
        if result.unknown:
            ITEM_UPDATES.labels(source=source, outcome="unknown").inc(result.unknown)
        self._publish(tracked, result.changed)

    def _publish(self, tracked: _TrackedJob, changed: list[VisualItem], source: Optional[UpdateSource] = None):
        if source is not None and changed:
            ITEM_UPDATES.labels(source=source, outcome="applied").inc(len(changed))
        job = tracked.job
        job.items = tracked.reconciler.items()
        if changed:
            job.updated_at = utcnow()
        for item in changed:
            if item.is_terminal:
                deadline = tracked.retry_deadlines.pop(item.type, None)
                if deadline:
                    deadline.cancel()
            self._emit(tracked, ItemUpdated(job.id, item))
        self._refresh(tracked)

    def _refresh(self, tracked: _TrackedJob):
        """Re-evaluates progress and aggregate completion after any item change."""
        if tracked.closed:
            return
        reconciler = tracked.reconciler
        job = tracked.job

        count = reconciler.terminal_count
        if count != tracked.terminal_count:
            tracked.terminal_count = count
            self._emit(tracked, Progress(job.id, count, len(reconciler)))
            if tracked.closed:
                return

        status = reconciler.aggregate_status()
        if status == JobStatus.PROCESSING:
            # A retry re-opens a finished job
            if job.status in TERMINAL_JOB_STATUSES:
                job.status = JobStatus.PROCESSING
            return

        job.status = status
        self._release(tracked)
        if tracked.completed:
            return
        tracked.completed = True
        if tracked.executed_at is not None:
            JOB_DURATION.observe(asyncio.get_running_loop().time() - tracked.executed_at)
        logger.info(f"Job {job.id} finished: {status} ({count}/{len(reconciler)})")
        self._emit(tracked, Complete(job.snapshot()))

    def _emit(self, tracked: _TrackedJob, event: TrackerEvent):
        for observer in list(tracked.observers):
            if tracked.closed:
                return
            try:
                observer(event)
            except Exception as e:
                logger.error(f"Observer failed on {type(event).__name__} for {tracked.job.id}: {e}", exc_info=True)
