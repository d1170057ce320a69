"""Webhook mode: a FastAPI app served by uvicorn on a background thread."""

import logging
import threading
from typing import Callable, Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.requests import ClientDisconnect

from .events import EVENT_HEADER, SIGNATURE_HEADER, is_relevant_event, validate_signature
from .models import DaemonError
from .shutdown import ShutdownToken

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
SHUTDOWN_CHECK_INTERVAL = 1.0
STARTUP_CHECK_INTERVAL = 0.05


def create_app(secret: Optional[str], on_event: Callable[[str], None]) -> FastAPI:
    """
    Create the webhook application.

    ``on_event`` receives the event type of every accepted delivery. It runs
    after the response has been sent.
    """
    app = FastAPI(
        title="Agent Supervisor Webhook",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await request.body()
        except ClientDisconnect:
            logger.warning("Failed to read webhook body")
            return PlainTextResponse("Bad Request", status_code=400)

        if secret:
            if not validate_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
                logger.warning("Webhook signature validation failed")
                return PlainTextResponse("Forbidden", status_code=403)

        event_type = request.headers.get(EVENT_HEADER, "")
        background_tasks.add_task(on_event, event_type)
        return PlainTextResponse("OK")

    @app.api_route("/{full_path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def not_found(full_path: str):
        return PlainTextResponse("Not Found", status_code=404)

    return app


class WebhookHandler:
    """Filters deliveries down to relevant events and triggers a launch."""

    def __init__(self, trigger: Callable[[str], None]):
        self.trigger = trigger

    def __call__(self, event_type: str) -> None:
        if not is_relevant_event(event_type):
            logger.debug(f"Ignoring webhook event: {event_type or '(none)'}")
            return
        logger.info(f"Relevant webhook event: {event_type}")
        self.trigger(f"webhook event {event_type}")


class WebhookServer:
    """Runs uvicorn until the shutdown token is set."""

    def __init__(self, app: FastAPI, port: int, shutdown: ShutdownToken, host: str = "0.0.0.0"):
        self.shutdown = shutdown
        self.port = port
        config = uvicorn.Config(app, host=host, port=port, log_config=None, log_level="warning")
        self.server = uvicorn.Server(config)

    def serve(self, on_ready: Optional[Callable[[], None]] = None) -> None:
        """
        Block until shutdown. In-flight requests finish before returning.

        ``on_ready`` is called once uvicorn has bound the port.

        Raises:
            DaemonError: If the server fails to start (e.g. the port is taken)
                or its thread dies later
        """
        # uvicorn only installs its own signal handlers on the main thread
        thread = threading.Thread(target=self.server.run, name="webhook-server", daemon=True)
        thread.start()

        while not self.server.started:
            if not thread.is_alive():
                raise DaemonError(f"Webhook server failed to start on port {self.port}")
            if self.shutdown.wait(STARTUP_CHECK_INTERVAL):
                self._stop(thread)
                return

        logger.info(f"Webhook server listening on port {self.port}")
        if on_ready is not None:
            on_ready()

        while not self.shutdown.wait(SHUTDOWN_CHECK_INTERVAL):
            if not thread.is_alive():
                raise DaemonError(f"Webhook server on port {self.port} exited unexpectedly")

        self._stop(thread)

    def _stop(self, thread: threading.Thread) -> None:
        logger.info("Stopping webhook server")
        self.server.should_exit = True
        thread.join()
