"""Usage logging for proxied provider calls.

An ASGI middleware that, after each POST completes, appends a UsageLog
row with the caller, the tool behind the path, the timing and the
outcome. Logging failures never affect the response.
"""

import json
import time
from typing import Any, Callable, Optional
import structlog

from .models import UsageLog, UsageStatus
from .stores import UsageStore

logger = structlog.get_logger()

USER_ID_HEADER = b"x-user-id"


def classify_status(status_code: int) -> tuple[UsageStatus, Optional[str]]:
    """Map an HTTP status to (status, error_code)."""
    if status_code < 400:
        return UsageStatus.SUCCESS, None
    return UsageStatus.ERROR, f"HTTP_{status_code}"


def _parse_params(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return {"raw": body[:1000].decode("utf-8", errors="replace")}


class UsageLogMiddleware:
    """Records every POST request as a UsageLog."""

    def __init__(
        self,
        app,
        store: Callable[[], UsageStore],
        tool_map: Optional[dict[str, str]] = None,
    ):
        self.app = app
        self._store = store
        self.tool_map = tool_map or {}

    async def __call__(self, scope, receive, send):
        # Only POSTs are logged; GETs are analytics and summaries
        if scope["type"] != "http" or scope.get("method") != "POST":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        body = bytearray()
        status = {"code": 500}

        async def receive_wrapper():
            message = await receive()
            if message["type"] == "http.request":
                body.extend(message.get("body", b""))
            return message

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            await self._record(scope, bytes(body), status["code"], duration_ms)

    async def _record(self, scope, body: bytes, status_code: int, duration_ms: int) -> None:
        headers = dict(scope.get("headers") or [])
        user_id = headers.get(USER_ID_HEADER)
        path = scope.get("path", "")
        usage_status, error_code = classify_status(status_code)

        entry = UsageLog(
            user_id=user_id.decode("latin-1") if user_id else None,
            tool_id=self.tool_map.get(path),
            params=_parse_params(body),
            duration_ms=duration_ms,
            status=usage_status,
            error_code=error_code,
        )

        try:
            await self._store().append(entry)
            logger.info("usage_logged", path=path, status=status_code, duration_ms=duration_ms)
        except Exception as e:
            logger.error("usage_log_failed", path=path, error=str(e))
