"""
HTTP Middleware

- RequestTracingMiddleware: request id, method, path, status, duration and
  client IP for every request
- BodySizeLimitMiddleware: rejects bodies over the configured ceiling
"""

import logging
import time
import uuid
from contextvars import ContextVar

from fastapi import Request
from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .client_ip import insecure_ip
from ..errors import UploadTooLarge

logger = logging.getLogger(__name__)

# Context variable for request ID (async safe)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


class RequestTracingMiddleware:
    """
    Logs one line per request and echoes the request id in X-Request-ID.

    The client IP logged here is the untrusted one.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)
        client_ip = insecure_ip(request)
        start_time = time.perf_counter()
        status_code = 500

        async def traced_send(message: Message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id
            await send(message)

        try:
            await self.app(scope, receive, traced_send)
        except Exception as e:
            logger.error(
                f"[{request_id}] Unhandled exception: {type(e).__name__}: {e}",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "client_ip": client_ip,
                },
            )
            raise
        finally:
            request_id_var.reset(token)

        duration_ms = (time.perf_counter() - start_time) * 1000

        log_level = logging.INFO if status_code < 400 else logging.WARNING
        if status_code >= 500:
            log_level = logging.ERROR

        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} from {client_ip} "
            f"-> {status_code} ({duration_ms:.1f}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )


class BodySizeLimitMiddleware:
    """
    Enforces a maximum request body size.

    A declared Content-Length over the limit is answered with 413 before the
    app runs. Bodies without one are counted as they are read; crossing the
    limit raises UploadTooLarge from receive(). A limit of 0 disables the
    check.
    """

    def __init__(self, app: ASGIApp, max_body_size: int):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or not self.max_body_size:
            await self.app(scope, receive, send)
            return

        limit = self.max_body_size

        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    declared = int(value)
                except ValueError:
                    break
                if declared > limit:
                    logger.warning(f"Rejected body of {declared:,} bytes (limit {limit:,})")
                    response = JSONResponse(
                        {"detail": str(UploadTooLarge(limit))}, status_code=413
                    )
                    await response(scope, receive, send)
                    return
                break

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise UploadTooLarge(limit)
            return message

        await self.app(scope, limited_receive, send)
