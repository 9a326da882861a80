import asyncio
import os
import subprocess
import sys
import time

import httpx

import logging

logging.basicConfig(level=logging.INFO)

sys.path.append(os.getcwd())

from photogen.domain.models import GenerationRequest
from photogen.settings import Settings
from tracker_sdk import GenerationTracker, JobApiClient, Observer

API_PORT = 8031
API_URL = f"http://localhost:{API_PORT}"

def start_sandbox(extra_env: dict) -> subprocess.Popen:
    env = {**os.environ, **extra_env}
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "photogen.sandbox.main:asgi_app", "--port", str(API_PORT)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )

async def wait_healthy(proc: subprocess.Popen):
    async with httpx.AsyncClient() as client:
        start = time.time()
        while time.time() - start < 10:
            try:
                resp = await client.get(f"{API_URL}/health")
                if resp.status_code == 200:
                    return
            except httpx.HTTPError:
                await asyncio.sleep(0.5)

    print("Failed to start sandbox")
    proc.terminate()
    _, stderr = proc.communicate()
    print(stderr.decode())
    sys.exit(1)

def stop_sandbox(proc: subprocess.Popen):
    print("Stopping sandbox...")
    proc.terminate()
    try:
        outs, errs = proc.communicate(timeout=5)
        if errs:
            print(f"Sandbox STDERR:\n{errs.decode()}")
    except subprocess.TimeoutExpired:
        proc.kill()

class PrintingObserver(Observer):
    def __init__(self):
        self.done = asyncio.Event()
        self.job = None
        self.progress = []

    def on_item_update(self, item):
        print(f"   item {item.type}: {item.status} {item.image_url or item.error or ''}")

    def on_progress(self, completed, total):
        print(f"   progress {completed}/{total}")
        self.progress.append((completed, total))

    def on_complete(self, job):
        print(f"   complete: {job.status}")
        self.job = job
        self.done.set()

    def on_connection_error(self, error):
        print(f"   push channel error (attempt {error.attempt}): {error}")

async def verify_tracker():
    # 1. Start Sandbox: two shots, "lifestyle" fails on its first attempt
    print("Starting sandbox service...")
    proc = start_sandbox({
        "PHOTOGEN_SANDBOX_STEP_SECONDS": "0.5",
        "PHOTOGEN_SANDBOX_FAIL_TYPES": '["lifestyle"]',
    })
    await wait_healthy(proc)
    print("Sandbox Ready.")

    settings = Settings(API_URL=API_URL, POLL_INTERVAL_SECONDS=1.0, JOB_TIMEOUT_SECONDS=30, RETRY_TIMEOUT_SECONDS=10)
    api = JobApiClient.from_settings(settings)

    try:
        async with GenerationTracker(api, settings=settings) as tracker:
            # 2. Submit + execute
            handle = await tracker.submit(GenerationRequest(
                product_id="prod-1",
                collection_id="col-1",
                shots=["main_visual", "lifestyle"],
            ))
            print(f"Submitted job {handle.job_id}")

            observer = PrintingObserver()
            tracker.subscribe(handle, observer)
            await tracker.execute(handle)

            try:
                await asyncio.wait_for(observer.done.wait(), timeout=20.0)
            except asyncio.TimeoutError:
                print("Timeout waiting for completion")
                sys.exit(1)

            statuses = {item.type: item.status for item in observer.job.items}
            assert statuses == {"main_visual": "completed", "lifestyle": "failed"}, statuses
            assert observer.progress[-1] == (2, 2)
            print("Verified first pass: main_visual completed, lifestyle failed")

            # 3. Retry the failed shot
            await tracker.retry_item(handle, "lifestyle")
            deadline = time.time() + 10
            while time.time() < deadline:
                if tracker.snapshot(handle).items[1].status == "completed":
                    break
                await asyncio.sleep(0.2)

            job = tracker.snapshot(handle)
            assert job.items[1].status == "completed", job.items[1]
            assert job.status == "completed"
            print("Verified retry: lifestyle completed")

            # 4. Archive download through the client
            archive = await api.download_archive(handle.job_id)
            assert archive[:2] == b"PK"
            print(f"Downloaded archive ({len(archive)} bytes)")
    finally:
        await api.close()
        stop_sandbox(proc)

if __name__ == "__main__":
    try:
        asyncio.run(verify_tracker())
    except KeyboardInterrupt:
        pass
