import asyncio
import logging
from typing import Any, Callable, Optional

import socketio
from pydantic import ValidationError
from socketio.exceptions import ConnectionError as SocketConnectionError

from photogen.api.schemas import CompleteEventPayload, ItemEventPayload, ProgressEventPayload
from photogen.domain.errors import ChannelError
from photogen.domain.events import PushedItem, PushedJob, PushedProgress, PushMessage
from photogen.domain.models import VisualItem
from photogen.domain.retry import backoff_delay
from photogen.domain.states import ItemStatus
from photogen.metrics import CHANNEL_CONNECT_FAILURES, CHANNEL_RECONNECTS

logger = logging.getLogger(__name__)

MessageHandler = Callable[[PushMessage], None]
ErrorHandler = Callable[[ChannelError], None]

class PushChannel:
    """
    Socket.IO subscription to one generation's event room.

    Owns its own reconnect loop (exponential backoff with jitter) instead of
    the client library's, so every failed attempt can be reported and the
    room is re-subscribed after each (re)connect. Decoded events are handed
    to `on_message` in arrival order.
    """

    def __init__(
        self,
        url: str,
        job_id: str,
        on_message: MessageHandler,
        on_error: ErrorHandler,
        namespace: str = "/generations",
        token: Optional[str] = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect_timeout: float = 5.0,
        item_event: str = "visual_completed",
        progress_event: str = "generation_progress",
        complete_event: str = "generation_complete",
        client_factory: Callable[[], Any] = None,
    ):
        self.url = url
        self.job_id = job_id
        self.on_message = on_message
        self.on_error = on_error
        self.namespace = namespace
        self.token = token
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connect_timeout = connect_timeout
        self.events = {
            item_event: self._handle_item,
            progress_event: self._handle_progress,
            complete_event: self._handle_complete,
        }
        self.client_factory = client_factory or (lambda: socketio.AsyncClient(reconnection=False))
        self.closed = False
        self._sio = None
        self._task: Optional[asyncio.Task] = None
        self._teardown: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, job_id: str, on_message: MessageHandler, on_error: ErrorHandler) -> "PushChannel":
        return cls(
            settings.socket_url,
            job_id,
            on_message,
            on_error,
            namespace=settings.SOCKET_NAMESPACE,
            token=settings.API_TOKEN or None,
            max_attempts=settings.RECONNECT_ATTEMPTS,
            base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
            max_delay=settings.RECONNECT_MAX_DELAY_SECONDS,
            connect_timeout=settings.SOCKET_CONNECT_TIMEOUT_SECONDS,
            item_event=settings.ITEM_EVENT,
            progress_event=settings.PROGRESS_EVENT,
            complete_event=settings.COMPLETE_EVENT,
        )

    @property
    def connected(self) -> bool:
        return self._sio is not None and self._sio.connected

    def start(self):
        if self.closed or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"push-{self.job_id}")

    def close(self):
        """
        Stops delivery immediately. Unsubscribe and disconnect happen in a
        background task; await aclose() to wait for them.
        """
        if self.closed:
            return
        self.closed = True
        if self._task:
            self._task.cancel()
            self._task = None
        if self._sio is not None:
            sio, self._sio = self._sio, None
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No running loop to disconnect channel for %s", self.job_id)
                return
            self._teardown = loop.create_task(self._shutdown(sio))

    async def aclose(self):
        self.close()
        if self._teardown:
            await self._teardown

    def _build_client(self):
        sio = self.client_factory()

        async def on_connect():
            logger.info(f"Connected to generation channel: {self.job_id}")
            await sio.emit("subscribe", {"generationId": self.job_id}, namespace=self.namespace)

        async def on_disconnect(*args):
            logger.info("Generation channel disconnected: %s", self.job_id)

        sio.on("connect", on_connect, namespace=self.namespace)
        sio.on("disconnect", on_disconnect, namespace=self.namespace)
        for event, handler in self.events.items():
            sio.on(event, self._wrap(event, handler), namespace=self.namespace)
        return sio

    def _wrap(self, event: str, handler: Callable[[Any], Optional[PushMessage]]):
        async def dispatch(data=None):
            if self.closed:
                return
            try:
                message = handler(data or {})
            except ValidationError as e:
                logger.warning("Dropping malformed %s event for %s: %s", event, self.job_id, e)
                return
            if message is not None:
                try:
                    self.on_message(message)
                except Exception as e:
                    logger.error(f"Push handler failed for {event}: {e}", exc_info=True)
        return dispatch

    async def _run(self):
        failures = 0
        try:
            while not self.closed:
                sio = self._build_client()
                self._sio = sio
                try:
                    await sio.connect(
                        self.url,
                        headers={"Authorization": f"Bearer {self.token}"} if self.token else {},
                        transports=["websocket"],
                        namespaces=[self.namespace],
                        wait_timeout=self.connect_timeout,
                    )
                except (SocketConnectionError, asyncio.TimeoutError, OSError) as e:
                    self._sio = None
                    failures += 1
                    CHANNEL_CONNECT_FAILURES.inc()
                    final = failures > self.max_attempts
                    logger.warning(
                        "Channel connect failed for job=%s attempt=%s final=%s: %s",
                        self.job_id, failures, final, e,
                    )
                    self._report(ChannelError(f"Push channel connect failed: {e}", attempt=failures, final=final, cause=e))
                    if final:
                        return
                    await asyncio.sleep(backoff_delay(failures - 1, self.base_delay, self.max_delay))
                    continue

                failures = 0
                await sio.wait()
                if self.closed:
                    break
                self._sio = None
                CHANNEL_RECONNECTS.inc()
                logger.info("Channel dropped for job=%s, reconnecting", self.job_id)
                await asyncio.sleep(backoff_delay(0, self.base_delay, self.max_delay))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Push channel loop crashed for {self.job_id}: {e}", exc_info=True)
            self._report(ChannelError(f"Push channel stopped: {e}", attempt=failures, final=True, cause=e))

    def _report(self, error: ChannelError):
        if self.closed:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error(f"Channel error handler failed: {e}", exc_info=True)

    async def _shutdown(self, sio):
        try:
            if sio.connected:
                await sio.emit("unsubscribe", {"generationId": self.job_id}, namespace=self.namespace)
            await sio.disconnect()
        except Exception as e:
            logger.warning("Channel teardown failed for %s: %s", self.job_id, e)

    # --- Event decoding ---

    def _handle_item(self, data: dict) -> Optional[PushMessage]:
        payload = ItemEventPayload.model_validate(data)
        if payload.type is None and payload.index is None:
            logger.warning("Item event for %s carries neither type nor index", self.job_id)
            return None
        item = VisualItem(
            type=payload.type or "",
            status=payload.status,
            image_url=payload.image_url if payload.status == ItemStatus.COMPLETED else None,
            error=payload.error if payload.status == ItemStatus.FAILED else None,
            generated_at=payload.generated_at,
        )
        return PushedItem(item=item, index=payload.index)

    def _handle_progress(self, data: dict) -> Optional[PushMessage]:
        payload = ProgressEventPayload.model_validate(data)
        return PushedProgress(payload.completed, payload.total, payload.progress_percent)

    def _handle_complete(self, data: dict) -> Optional[PushMessage]:
        payload = CompleteEventPayload.model_validate(data)
        return PushedJob(status=payload.status, items=tuple(v.to_domain() for v in payload.visuals))
