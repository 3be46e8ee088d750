"""
Webhook trigger — fires on authenticated HTTP POSTs.

With a secret configured, `X-Webhook-Signature` must carry the hex
HMAC-SHA256 of the raw request body (an optional `sha256=` prefix is
accepted). The response is sent before the callback runs.
"""

import asyncio
import contextlib
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent_runtime.errors import TriggerError
from agent_runtime.triggers.base import Trigger, TriggerCallback, invoke_callback

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
STARTUP_POLL_SECONDS = 0.01


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(signature, sign_payload(body, secret))


class WebhookTrigger(Trigger):

    trigger_type = "webhook"

    def __init__(
        self,
        port: int,
        path: str = "/webhook",
        secret: Optional[str] = None,
        host: str = "127.0.0.1",
    ):
        super().__init__()
        self.port = port
        self.path = path if path.startswith("/") else f"/{path}"
        self.secret = secret
        self.host = host
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    def build_app(self, callback: Optional[TriggerCallback] = None) -> FastAPI:
        """
        The webhook endpoint as an ASGI app. Passing `callback` binds it
        directly, for mounting the endpoint without the built-in server.
        """
        if callback is not None:
            self._callback = callback
        app = FastAPI(title="Agent Webhook Trigger")

        @app.post(self.path)
        async def receive(request: Request):
            body = await request.body()
            if self.secret and not verify_signature(
                body, request.headers.get(SIGNATURE_HEADER), self.secret
            ):
                logger.warning("webhook_signature_rejected", path=self.path)
                return JSONResponse(status_code=401, content={"error": "Invalid signature"})

            try:
                parsed = json.loads(body) if body else None
            except json.JSONDecodeError:
                return JSONResponse(status_code=400, content={"error": "Body must be JSON"})

            if self._callback is None:
                return JSONResponse(status_code=503, content={"error": "Trigger not started"})

            payload = {
                "body": parsed,
                "headers": dict(request.headers),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self._schedule(payload)
            return {"success": True}

        return app

    async def drain(self) -> None:
        """Wait for callbacks already scheduled by accepted requests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def describe(self) -> Dict[str, Any]:
        return dict(super().describe(), host=self.host, port=self.port, path=self.path)

    async def _start(self, callback: TriggerCallback) -> None:
        config = uvicorn.Config(
            self.build_app(), host=self.host, port=self.port, log_level="warning"
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._server_task.done():
                error = self._server_task.exception()
                raise TriggerError(f"Webhook server exited during startup: {error}")
            await asyncio.sleep(STARTUP_POLL_SECONDS)
        logger.info("webhook_listening", host=self.host, port=self.port, path=self.path)

    async def _stop(self) -> None:
        server, task = self._server, self._server_task
        self._server, self._server_task = None, None
        if server is not None:
            server.should_exit = True
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.drain()

    def _schedule(self, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(invoke_callback(self._callback, payload))
        self._pending.add(task)
        task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("webhook_callback_failed", error=str(task.exception()))
