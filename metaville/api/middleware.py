"""
Middleware поверх CORSMiddleware: явный отказ чужим origin и лимит размера тела.
"""
import logging
from typing import Iterable

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from metaville.core.errors import PayloadTooLarge

logger = logging.getLogger(__name__)


class OriginGuardMiddleware(BaseHTTPMiddleware):
    """
    Если список FRONT_ORIGINS задан — запрос с чужим Origin получает 403 {"error": "CORS"}.
    Запросы без Origin (curl, health, вебхук Telegram) пропускаются.
    """

    def __init__(self, app, allowed_origins: Iterable[str]):
        super().__init__(app)
        self.allowed_origins = {o.rstrip("/") for o in allowed_origins}

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")
        if request.method == "OPTIONS":
            logger.debug("CORS preflight: %s origin=%s", request.url.path, origin)
        if origin and self.allowed_origins and origin.rstrip("/") not in self.allowed_origins:
            logger.info("CORS rejected: %s origin=%s", request.url.path, origin)
            return JSONResponse(status_code=403, content={"ok": False, "error": "CORS"})
        return await call_next(request)


class BodySizeLimitMiddleware:
    """
    Лимит тела max_bytes. Content-Length больше лимита — 413 сразу, до чтения.
    Без Content-Length (chunked) байты считаются при чтении: превышение поднимает
    PayloadTooLarge, и обработчик ошибок отвечает тем же 413.
    """

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        length = Headers(scope=scope).get("content-length")
        if length is not None:
            try:
                too_big = int(length) > self.max_bytes
            except ValueError:
                response = JSONResponse(status_code=400, content={"ok": False, "error": "bad_request"})
                await response(scope, receive, send)
                return
            if too_big:
                response = JSONResponse(status_code=413, content={"ok": False, "error": "payload_too_large"})
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    logger.info("body over %s bytes without Content-Length: %s", self.max_bytes, scope.get("path"))
                    raise PayloadTooLarge(f"body exceeds {self.max_bytes} bytes")
            return message

        await self.app(scope, limited_receive, send)
