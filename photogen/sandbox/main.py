import logging
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI

from photogen.sandbox.routes import router as generations_router
from photogen.sandbox.store import SandboxStore
from photogen.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

def create_sio(namespace: str) -> socketio.AsyncServer:
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")

    @sio.on("subscribe", namespace=namespace)
    async def subscribe(sid, data):
        gen_id = (data or {}).get("generationId")
        if gen_id:
            await sio.enter_room(sid, gen_id, namespace=namespace)
            logger.info(f"{sid} subscribed to {gen_id}")

    @sio.on("unsubscribe", namespace=namespace)
    async def unsubscribe(sid, data):
        gen_id = (data or {}).get("generationId")
        if gen_id:
            await sio.leave_room(sid, gen_id, namespace=namespace)

    return sio

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SandboxStore] = None,
) -> tuple[FastAPI, socketio.AsyncServer]:
    """Builds the sandbox REST app and its Socket.IO server, sharing one store."""
    settings = settings or default_settings
    sio = create_sio(settings.SOCKET_NAMESPACE)

    async def notify(event: str, data: dict, room: str):
        await sio.emit(event, data, room=room, namespace=settings.SOCKET_NAMESPACE)

    if store is None:
        store = SandboxStore(
            step_seconds=settings.SANDBOX_STEP_SECONDS,
            fail_types=settings.SANDBOX_FAIL_TYPES,
        )
    store.notify = notify

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Sandbox generation service started (step=%ss)", store.step_seconds)
        yield
        await store.shutdown()

    app = FastAPI(title=f"{settings.PROJECT_NAME} sandbox", lifespan=lifespan)
    app.state.store = store
    app.state.token = settings.SANDBOX_TOKEN
    app.include_router(generations_router, prefix="/api/generations", tags=["generations"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app, sio

def create_asgi_app(settings: Optional[Settings] = None):
    app, sio = create_app(settings)
    return socketio.ASGIApp(sio, other_asgi_app=app)

# uvicorn photogen.sandbox.main:asgi_app
asgi_app = create_asgi_app()
