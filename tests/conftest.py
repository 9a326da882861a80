import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from photogen.domain.models import JobProgress, VisualItem
from photogen.domain.states import ItemStatus
from photogen.settings import Settings
from tracker_sdk.tracker import GenerationTracker

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)

def processing(item_type: str) -> VisualItem:
    return VisualItem(type=item_type, status=ItemStatus.PROCESSING)

def completed(item_type: str, when: datetime = T0) -> VisualItem:
    return VisualItem(
        type=item_type,
        status=ItemStatus.COMPLETED,
        image_url=f"https://img.test/{item_type}.png",
        generated_at=when,
    )

def failed(item_type: str, when: datetime = T0, error: str = "model error") -> VisualItem:
    return VisualItem(type=item_type, status=ItemStatus.FAILED, error=error, generated_at=when)

async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)

class FakeApi:
    """In-process stand-in for JobApiClient."""

    def __init__(self, prompts=None):
        self.job_id = "job-1"
        self.prompts = prompts if prompts is not None else {"main_visual": "hero shot", "lifestyle": "in use"}
        self.snapshot = JobProgress(status="processing", items=[processing(t) for t in self.prompts])
        self.execute_items = None
        self.retry_items = None
        self.fail = {}
        self.calls = []
        self.polls = 0

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    async def create_job(self, product_id, collection_id, **kwargs):
        self._record("create_job", product_id, collection_id, kwargs)
        return self.job_id

    async def merge_prompts(self, job_id, options):
        self._record("merge_prompts", job_id, options)
        return dict(self.prompts)

    async def execute_job(self, job_id):
        self._record("execute_job", job_id)
        if self.execute_items is not None:
            return list(self.execute_items)
        return [processing(t) for t in self.prompts]

    async def get_job_snapshot(self, job_id):
        self.polls += 1
        self._record("get_job_snapshot", job_id)
        return self.snapshot

    async def retry_item(self, job_id, index):
        self._record("retry_item", job_id, index)
        return list(self.retry_items or [])

class FakeChannel:
    """
    Records lifecycle calls. push()/fail() deliver even after close so tests
    can prove the tracker itself drops late messages.
    """

    def __init__(self, job_id, on_message, on_error):
        self.job_id = job_id
        self.on_message = on_message
        self.on_error = on_error
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def close(self):
        self.closed = True

    async def aclose(self):
        self.close()

    def push(self, message):
        self.on_message(message)

    def fail(self, error):
        self.on_error(error)

class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of(self, kind):
        return [e for e in self.events if isinstance(e, kind)]

@pytest.fixture
def settings():
    return Settings(
        POLL_INTERVAL_SECONDS=0.02,
        JOB_TIMEOUT_SECONDS=5.0,
        RETRY_TIMEOUT_SECONDS=5.0,
    )

@pytest.fixture
def api():
    return FakeApi()

@pytest.fixture
def channels():
    return []

@pytest_asyncio.fixture
async def tracker(api, settings, channels):
    def factory(job_id, on_message, on_error):
        channel = FakeChannel(job_id, on_message, on_error)
        channels.append(channel)
        return channel

    tracker = GenerationTracker(api, settings=settings, channel_factory=factory)
    yield tracker
    await tracker.aclose()

@pytest.fixture
def recorder():
    return Recorder()
