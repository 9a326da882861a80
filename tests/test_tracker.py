import asyncio

import pytest
from prometheus_client import REGISTRY

from photogen.domain.errors import (
    ApiError,
    ChannelError,
    InvalidItemStateError,
    InvalidJobStateError,
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
)
from photogen.domain.models import GenerationRequest, JobHandle, JobProgress, VisualItem
from photogen.domain.states import ItemStatus, JobStatus
from tracker_sdk.observer import Observer
from tracker_sdk.tracker import GenerationTracker

from conftest import FakeChannel, at, completed, failed, processing, wait_until

def metric(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0

def request(shots=("main_visual", "lifestyle")):
    return GenerationRequest(product_id="prod-1", collection_id="col-1", shots=list(shots))

async def started(tracker, recorder):
    handle = await tracker.submit(request())
    tracker.subscribe(handle, recorder)
    await tracker.execute(handle)
    return handle

def item_updates(recorder, item_type):
    return [e.item for e in recorder.of(ItemUpdated) if e.item.type == item_type]

# --- submit ---

@pytest.mark.asyncio
async def test_submit_creates_items_in_merge_order(tracker, api):
    handle = await tracker.submit(GenerationRequest(
        product_id="prod-1", collection_id="col-1", shots=["main_visual", "lifestyle"],
        custom_instructions="white background",
    ))
    job = tracker.snapshot(handle)

    assert handle.job_id == "job-1"
    assert job.status == JobStatus.MERGED
    assert [(i.type, i.status, i.prompt) for i in job.items] == [
        ("main_visual", ItemStatus.PENDING, "hero shot"),
        ("lifestyle", ItemStatus.PENDING, "in use"),
    ]

    names = [c[0] for c in api.calls]
    assert names == ["create_job", "merge_prompts"]
    options = api.calls[1][2]
    assert set(options["shot_options"]) == {"main_visual", "lifestyle"}
    assert options["custom_instructions"] == "white background"

@pytest.mark.asyncio
async def test_submit_rejects_empty_shots(tracker, api):
    with pytest.raises(JobSubmissionError):
        await tracker.submit(request(shots=()))
    assert api.calls == []

@pytest.mark.asyncio
@pytest.mark.parametrize("failing", ["create_job", "merge_prompts"])
async def test_submit_failure_keeps_nothing(tracker, api, failing):
    cause = ApiError(500, ["Internal server error"])
    api.fail[failing] = cause

    with pytest.raises(JobSubmissionError) as exc:
        await tracker.submit(request())
    assert exc.value.cause is cause
    with pytest.raises(UnknownHandleError):
        tracker.snapshot(JobHandle("job-1"))

@pytest.mark.asyncio
async def test_submit_with_no_prompts_fails(tracker, api):
    api.prompts = {}
    with pytest.raises(JobSubmissionError):
        await tracker.submit(request())

# --- execute ---

@pytest.mark.asyncio
async def test_execute_requires_merged_job(tracker, recorder):
    handle = await started(tracker, recorder)
    with pytest.raises(InvalidJobStateError):
        await tracker.execute(handle)

@pytest.mark.asyncio
async def test_execute_failure_reports_once_and_fails_job(tracker, api, recorder, channels):
    api.fail["execute_job"] = ApiError(None, ["Network error"])
    handle = await started(tracker, recorder)

    assert len(recorder.events) == 1
    event = recorder.events[0]
    assert isinstance(event, ExecutionFailed)
    assert event.job_id == "job-1"
    assert isinstance(event.error.cause, ApiError)
    assert tracker.snapshot(handle).status == JobStatus.FAILED

    # Nothing is observed for a job that never started
    await asyncio.sleep(0.06)
    assert channels == []
    assert api.polls == 0

@pytest.mark.asyncio
async def test_happy_path_completes_once(tracker, api, recorder, channels):
    handle = await started(tracker, recorder)
    assert tracker.snapshot(handle).status == JobStatus.PROCESSING
    assert channels[0].started

    channels[0].push(PushedItem(completed("main_visual", at(1))))
    assert recorder.of(Progress)[-1].completed == 1

    api.snapshot = JobProgress(
        status="completed",
        items=[completed("main_visual", at(1)), completed("lifestyle", at(2))],
    )
    await wait_until(lambda: recorder.of(Complete))

    progress = [(p.completed, p.total) for p in recorder.of(Progress)]
    assert progress == [(1, 2), (2, 2)]
    [done] = recorder.of(Complete)
    assert done.job.status == JobStatus.COMPLETED
    assert [i.status for i in done.job.items] == [ItemStatus.COMPLETED, ItemStatus.COMPLETED]
    assert done.job.items[0].prompt == "hero shot"

    # Observation resources are released after completion
    assert channels[0].closed
    polls = api.polls
    await asyncio.sleep(0.06)
    assert api.polls == polls
    assert len(recorder.of(Complete)) == 1

@pytest.mark.asyncio
async def test_complete_with_one_failure_is_completed(tracker, recorder, channels):
    await started(tracker, recorder)
    channels[0].push(PushedJob(status="completed", items=(
        completed("main_visual", at(1)), failed("lifestyle", at(1)),
    )))
    [done] = recorder.of(Complete)
    assert done.job.status == JobStatus.COMPLETED

@pytest.mark.asyncio
async def test_all_failed_job_is_failed(tracker, recorder, channels):
    await started(tracker, recorder)
    channels[0].push(PushedJob(status="failed", items=(
        failed("main_visual", at(1)), failed("lifestyle", at(1)),
    )))
    [done] = recorder.of(Complete)
    assert done.job.status == JobStatus.FAILED

@pytest.mark.asyncio
async def test_duplicate_and_stale_updates_are_ignored(tracker, api, recorder, channels):
    await started(tracker, recorder)
    channels[0].push(PushedItem(completed("main_visual", at(1))))
    channels[0].push(PushedItem(completed("main_visual", at(1))))

    # Poll still reports it as processing
    polls = api.polls
    await wait_until(lambda: api.polls >= polls + 2)

    main = item_updates(recorder, "main_visual")
    assert [i.status for i in main if i.is_terminal] == [ItemStatus.COMPLETED]
    assert main[-1].status == ItemStatus.COMPLETED
    assert len(recorder.of(Progress)) == 1

@pytest.mark.asyncio
async def test_push_by_index_resolves_item_type(tracker, recorder, channels):
    handle = await started(tracker, recorder)
    pushed = VisualItem(type="", status=ItemStatus.COMPLETED, image_url="https://img.test/x.png", generated_at=at(1))

    channels[0].push(PushedItem(pushed, index=1))
    channels[0].push(PushedItem(pushed, index=7))

    job = tracker.snapshot(handle)
    assert job.items[1].status == ItemStatus.COMPLETED
    assert job.items[1].image_url == "https://img.test/x.png"
    assert job.items[0].status == ItemStatus.PROCESSING

@pytest.mark.asyncio
async def test_pushed_progress_only_updates_percent(tracker, recorder, channels):
    handle = await started(tracker, recorder)
    channels[0].push(PushedProgress(completed=2, total=2, progress_percent=50.0))
    assert tracker.snapshot(handle).progress_percent == 50.0
    assert recorder.of(Progress) == []

@pytest.mark.asyncio
async def test_channel_error_reported_while_polling_continues(tracker, api, recorder, channels):
    await started(tracker, recorder)
    channels[0].fail(ChannelError("connect failed", attempt=6, final=True))

    [failure] = recorder.of(ConnectionFailed)
    assert failure.error.final

    api.snapshot = JobProgress(status="completed", items=[completed("main_visual", at(1)), completed("lifestyle", at(1))])
    await wait_until(lambda: recorder.of(Complete))

@pytest.mark.asyncio
async def test_poll_failures_are_counted_and_skipped(tracker, api, recorder):
    before = metric("tracker_poll_failures_total")
    api.fail["get_job_snapshot"] = ApiError(503, ["Service unavailable"])
    await started(tracker, recorder)

    await wait_until(lambda: api.polls >= 2)
    assert metric("tracker_poll_failures_total") >= before + 2
    assert recorder.of(Complete) == []

    del api.fail["get_job_snapshot"]
    api.snapshot = JobProgress(status="completed", items=[completed("main_visual", at(1)), completed("lifestyle", at(1))])
    await wait_until(lambda: recorder.of(Complete))

# --- timeouts ---

@pytest.mark.asyncio
async def test_job_timeout_fails_unfinished_items(tracker, settings, recorder, channels):
    settings.JOB_TIMEOUT_SECONDS = 0.1
    before = metric("tracker_timeouts_total", scope="job")
    handle = await started(tracker, recorder)
    channels[0].push(PushedItem(completed("main_visual", at(1))))

    await wait_until(lambda: recorder.of(Complete))
    [done] = recorder.of(Complete)
    assert done.job.status == JobStatus.COMPLETED
    main, lifestyle = done.job.items
    assert main.status == ItemStatus.COMPLETED
    assert lifestyle.status == ItemStatus.FAILED
    assert lifestyle.error == "Generation job timed out after 0.1s"
    assert metric("tracker_timeouts_total", scope="job") == before + 1

    # A late result generated before the forced failure is stale
    count = len(recorder.events)
    channels[0].push(PushedItem(completed("lifestyle", at(9))))
    await asyncio.sleep(0.05)
    assert len(recorder.events) == count
    assert tracker.snapshot(handle).items[1].status == ItemStatus.FAILED

@pytest.mark.asyncio
async def test_everything_timing_out_fails_job(tracker, settings, recorder):
    settings.JOB_TIMEOUT_SECONDS = 0.05
    await started(tracker, recorder)
    await wait_until(lambda: recorder.of(Complete))

    [done] = recorder.of(Complete)
    assert done.job.status == JobStatus.FAILED
    assert all("timed out" in item.error for item in done.job.items)

# --- retry ---

async def finished_with_failure(tracker, api, recorder, channels):
    handle = await started(tracker, recorder)
    api.snapshot = JobProgress(status="completed", items=[completed("main_visual", at(1)), failed("lifestyle", at(1))])
    channels[0].push(PushedJob(status="completed", items=tuple(api.snapshot.items)))
    assert len(recorder.of(Complete)) == 1
    return handle

@pytest.mark.asyncio
async def test_retry_reopens_and_resolves_item(tracker, api, recorder, channels):
    handle = await finished_with_failure(tracker, api, recorder, channels)
    api.retry_items = [completed("main_visual", at(1)), processing("lifestyle")]

    await tracker.retry_item(handle, "lifestyle")

    assert ("retry_item", "job-1", 1) in api.calls
    assert item_updates(recorder, "lifestyle")[-1].status == ItemStatus.PROCESSING
    assert (recorder.of(Progress)[-1].completed, recorder.of(Progress)[-1].total) == (1, 2)
    assert tracker.snapshot(handle).status == JobStatus.PROCESSING
    assert len(channels) == 2 and channels[1].started

    # Polls keep serving the stale failure; it must not undo the retry
    polls = api.polls
    await wait_until(lambda: api.polls >= polls + 2)
    assert tracker.snapshot(handle).items[1].status == ItemStatus.PROCESSING

    channels[1].push(PushedItem(completed("lifestyle", at(5))))
    job = tracker.snapshot(handle)
    assert job.items[1].status == ItemStatus.COMPLETED
    assert job.status == JobStatus.COMPLETED
    assert (recorder.of(Progress)[-1].completed, recorder.of(Progress)[-1].total) == (2, 2)
    assert len(recorder.of(Complete)) == 1
    assert channels[1].closed

@pytest.mark.asyncio
async def test_retry_preconditions(tracker, api, recorder, channels):
    handle = await finished_with_failure(tracker, api, recorder, channels)
    with pytest.raises(UnknownItemError):
        await tracker.retry_item(handle, "detail")
    with pytest.raises(InvalidItemStateError):
        await tracker.retry_item(handle, "main_visual")
    with pytest.raises(UnknownHandleError):
        await tracker.retry_item(JobHandle("other"), "lifestyle")

@pytest.mark.asyncio
async def test_retry_of_untimed_failure_survives_stale_polls(tracker, api, recorder, channels):
    handle = await started(tracker, recorder)
    api.snapshot = JobProgress(status="completed", items=[completed("main_visual", at(1)), failed("lifestyle", None)])
    channels[0].push(PushedJob(status="completed", items=tuple(api.snapshot.items)))
    assert tracker.snapshot(handle).items[1].generated_at is None

    await tracker.retry_item(handle, "lifestyle")

    # The lagging poll keeps serving the untimed failure
    polls = api.polls
    await wait_until(lambda: api.polls >= polls + 2)
    assert tracker.snapshot(handle).items[1].status == ItemStatus.PROCESSING

    channels[1].push(PushedItem(completed("lifestyle", at(50))))
    job = tracker.snapshot(handle)
    assert job.items[1].status == ItemStatus.COMPLETED
    assert job.status == JobStatus.COMPLETED

@pytest.mark.asyncio
async def test_retry_call_failure_restores_failed_item(tracker, api, recorder, channels):
    handle = await finished_with_failure(tracker, api, recorder, channels)
    api.fail["retry_item"] = ApiError(500, ["Retry failed"])

    await tracker.retry_item(handle, "lifestyle")

    statuses = [i.status for i in item_updates(recorder, "lifestyle")]
    assert statuses[-2:] == [ItemStatus.PROCESSING, ItemStatus.FAILED]
    job = tracker.snapshot(handle)
    assert job.items[1].error == "Retry failed for lifestyle: Retry failed"
    assert job.items[0].status == ItemStatus.COMPLETED
    assert job.status == JobStatus.COMPLETED
    assert len(recorder.of(Complete)) == 1

@pytest.mark.asyncio
async def test_retry_timeout_fails_item(tracker, api, settings, recorder, channels):
    settings.RETRY_TIMEOUT_SECONDS = 0.05
    handle = await finished_with_failure(tracker, api, recorder, channels)
    api.snapshot = JobProgress(status="processing", items=[completed("main_visual", at(1)), processing("lifestyle")])

    await tracker.retry_item(handle, "lifestyle")
    await wait_until(lambda: tracker.snapshot(handle).items[1].status == ItemStatus.FAILED)

    item = tracker.snapshot(handle).items[1]
    assert item.error == "Generation retry of lifestyle timed out after 0.05s"
    assert tracker.snapshot(handle).status == JobStatus.COMPLETED
    assert channels[1].closed

# --- cancel / observers ---

@pytest.mark.asyncio
async def test_cancel_silences_everything(tracker, api, settings, recorder, channels):
    settings.JOB_TIMEOUT_SECONDS = 0.05
    handle = await started(tracker, recorder)
    count = len(recorder.events)

    tracker.cancel(handle)
    tracker.cancel(handle)
    assert channels[0].closed
    polls = api.polls

    channels[0].push(PushedItem(completed("main_visual", at(1))))
    channels[0].fail(ChannelError("late"))
    await asyncio.sleep(0.1)

    assert len(recorder.events) == count
    assert api.polls == polls
    with pytest.raises(UnknownHandleError):
        tracker.snapshot(handle)

@pytest.mark.asyncio
async def test_cancel_from_inside_observer_stops_delivery(tracker, recorder, channels):
    handle = await tracker.submit(request())
    tracker.subscribe(handle, lambda event: tracker.cancel(handle))
    tracker.subscribe(handle, recorder)
    await tracker.execute(handle)

    channels[0].push(PushedItem(completed("main_visual", at(1))))
    assert recorder.events == []

def test_cancel_after_loop_shutdown(api, settings, recorder):
    channels = []

    def factory(job_id, on_message, on_error):
        channel = FakeChannel(job_id, on_message, on_error)
        channels.append(channel)
        return channel

    tracker = GenerationTracker(api, settings=settings, channel_factory=factory)

    async def start():
        return await started(tracker, recorder)

    handle = asyncio.run(start())
    tracker.cancel(handle)

    assert channels[0].closed
    with pytest.raises(UnknownHandleError):
        tracker.snapshot(handle)

@pytest.mark.asyncio
async def test_failing_observer_does_not_break_others(tracker, recorder, channels):
    handle = await tracker.submit(request())

    def broken(event):
        raise RuntimeError("observer bug")

    tracker.subscribe(handle, broken)
    tracker.subscribe(handle, recorder)
    await tracker.execute(handle)
    channels[0].push(PushedJob(status="completed", items=(completed("main_visual", at(1)), completed("lifestyle", at(1)))))
    assert len(recorder.of(Complete)) == 1

@pytest.mark.asyncio
async def test_unsubscribe(tracker, recorder, channels):
    handle = await tracker.submit(request())
    unsubscribe = tracker.subscribe(handle, recorder)
    unsubscribe()
    unsubscribe()
    await tracker.execute(handle)
    channels[0].push(PushedItem(completed("main_visual", at(1))))
    assert recorder.events == []

@pytest.mark.asyncio
async def test_snapshot_is_a_copy(tracker, recorder):
    handle = await started(tracker, recorder)
    snap = tracker.snapshot(handle)
    snap.items.clear()
    snap.status = JobStatus.FAILED
    again = tracker.snapshot(handle)
    assert len(again.items) == 2
    assert again.status == JobStatus.PROCESSING

@pytest.mark.asyncio
async def test_observer_base_routes_events(tracker, recorder, channels):
    class Collecting(Observer):
        def __init__(self):
            self.seen = []

        def on_item_update(self, item):
            self.seen.append(("item", item.type, item.status))

        def on_progress(self, completed, total):
            self.seen.append(("progress", completed, total))

        def on_complete(self, job):
            self.seen.append(("complete", job.status))

        def on_connection_error(self, error):
            self.seen.append(("channel", error.attempt))

    observer = Collecting()
    handle = await tracker.submit(request())
    tracker.subscribe(handle, observer)
    await tracker.execute(handle)
    channels[0].fail(ChannelError("down", attempt=1))
    channels[0].push(PushedJob(status="completed", items=(completed("main_visual", at(1)), failed("lifestyle", at(1)))))

    assert observer.seen == [
        ("item", "main_visual", ItemStatus.PROCESSING),
        ("item", "lifestyle", ItemStatus.PROCESSING),
        ("channel", 1),
        ("item", "main_visual", ItemStatus.COMPLETED),
        ("item", "lifestyle", ItemStatus.FAILED),
        ("progress", 2, 2),
        ("complete", JobStatus.COMPLETED),
    ]
