"""Pub/Sub push delivery served in-process by uvicorn."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Iterator

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, ValidationError

from mailflow import __version__
from mailflow.core.exceptions import DeliveryError
from mailflow.core.types import AckDecision, Envelope, NotificationHandler
from mailflow.observability.logging import get_logger
from mailflow.observability.metrics import get_metrics_collector

logger = get_logger(__name__)


class PushMessage(BaseModel):
    """The message object inside a Pub/Sub push request."""

    data: str = ""
    message_id: str = Field(default="", alias="messageId")
    attributes: dict[str, str] = Field(default_factory=dict)
    publish_time: str | None = Field(default=None, alias="publishTime")


class PushRequest(BaseModel):
    """Body of a Pub/Sub push request."""

    message: PushMessage
    subscription: str | None = None


def create_push_app(handler: NotificationHandler, push_path: str = "/pubsub/push") -> FastAPI:
    """
    Build the push endpoint application.

    Pub/Sub treats 2xx as an ack and anything else as a nack, so an ACK
    decision answers 204 and a NACK answers 500.
    """
    router = APIRouter()

    @router.post(push_path, status_code=status.HTTP_204_NO_CONTENT)
    async def receive_push(request: Request) -> Response:
        try:
            body: Any = await request.json()
            push = PushRequest.model_validate(body)
        except (ValueError, ValidationError):
            # Redelivering an unparseable push body cannot succeed
            logger.warning("Rejected malformed push request")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid Pub/Sub push payload",
            )

        envelope = Envelope.from_pubsub_message(
            push.message.model_dump(by_alias=True),
            subscription=push.subscription,
        )
        try:
            decision = await handler(envelope)
        except Exception as e:
            logger.error("Push handler failed", message_id=envelope.message_id, error=str(e))
            decision = AckDecision.NACK

        if decision is AckDecision.ACK:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @router.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    @router.get("/metrics")
    async def metrics() -> Response:
        return Response(
            content=get_metrics_collector().get_metrics(),
            media_type="text/plain; version=0.0.4",
        )

    app = FastAPI(
        title="mailflow push receiver",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.include_router(router)
    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class PushDeliveryServer:
    """
    Delivery client that receives Pub/Sub pushes over HTTP.

    The subscription must be configured with this server's public URL as
    its push endpoint.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        push_path: str = "/pubsub/push",
    ) -> None:
        self._host = host
        self._port = port
        self._push_path = push_path
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self, handler: NotificationHandler) -> None:
        if self._task is not None:
            raise DeliveryError("Push server already started")

        config = uvicorn.Config(
            create_push_app(handler, self._push_path),
            host=self._host,
            port=self._port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._serve(), name="push_server")
        logger.info(
            "Push delivery server started",
            host=self._host,
            port=self._port,
            path=self._push_path,
        )

    async def _serve(self) -> None:
        assert self._server is not None
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise DeliveryError(
                "Push server failed to start",
                {"host": self._host, "port": self._port},
            ) from e

    async def stop(self, timeout: float | None = None) -> None:
        """Stop accepting requests and let in-flight ones finish."""
        if self._server is None or self._task is None:
            return

        self._server.should_exit = True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.warning("Push server drain timed out, forcing exit", timeout=timeout)
            self._server.force_exit = True
            await asyncio.gather(self._task, return_exceptions=True)
        logger.info("Push delivery server stopped")

    async def wait(self) -> None:
        if self._task is None:
            return
        await self._task
