import asyncio
import os
import sys
import time

import logging

logging.basicConfig(level=logging.INFO)

sys.path.append(os.getcwd())

from photogen.domain.events import Complete
from photogen.domain.models import GenerationRequest
from photogen.settings import Settings
from tracker_sdk import GenerationTracker, JobApiClient

from verify_tracker import API_URL, start_sandbox, stop_sandbox, wait_healthy

async def verify_timeout():
    # Sandbox takes a minute per visual; the tracker gives up after 2s
    print("1. Starting slow sandbox...")
    proc = start_sandbox({"PHOTOGEN_SANDBOX_STEP_SECONDS": "60"})
    await wait_healthy(proc)

    settings = Settings(API_URL=API_URL, POLL_INTERVAL_SECONDS=0.5, JOB_TIMEOUT_SECONDS=2)
    api = JobApiClient.from_settings(settings)
    events = []
    done = asyncio.Event()

    def on_event(event):
        events.append(event)
        if isinstance(event, Complete):
            done.set()

    try:
        async with GenerationTracker(api, settings=settings) as tracker:
            handle = await tracker.submit(GenerationRequest(
                product_id="prod-slow", collection_id="col-1", shots=["main_visual", "lifestyle"],
            ))
            tracker.subscribe(handle, on_event)

            print("2. Executing with a 2s safety timeout...")
            started = time.time()
            await tracker.execute(handle)
            await asyncio.wait_for(done.wait(), timeout=10.0)
            elapsed = time.time() - started
            print(f"   Complete fired after {elapsed:.1f}s")

            job = [e for e in events if isinstance(e, Complete)][0].job
            assert job.status == "failed", job.status
            assert all(item.status == "failed" and "timed out" in item.error for item in job.items)
            print("3. Verified: all items force-failed with a timeout error")

            # Nothing else may arrive once complete
            count = len(events)
            await asyncio.sleep(2)
            assert len(events) == count, events[count:]
            print("4. Verified: no events after completion")
    finally:
        await api.close()
        stop_sandbox(proc)

if __name__ == "__main__":
    try:
        asyncio.run(verify_timeout())
    except KeyboardInterrupt:
        pass
