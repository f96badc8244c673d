import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi.errors import RateLimitExceeded

from metaville.api.limits import configure_limiter, limiter
from metaville.api.middleware import BodySizeLimitMiddleware, OriginGuardMiddleware
from metaville.api.routes import router as player_router
from metaville.api.webhook_routes import router as webhook_router
from metaville.config import Settings, load_settings
from metaville.core.errors import MetavilleError
from metaville.infrastructure.database import close_db, init_db

logger = logging.getLogger(__name__)

CORS_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_HEADERS = ["Content-Type", "Authorization", "X-Requested-With", "X-Telegram-Init-Data"]


def _log_startup(settings: Settings) -> None:
    logger.info("Allowed origins: %s", ", ".join(settings.front_origins) if settings.front_origins else "(any)")
    if settings.front_url:
        logger.info("Front URL for TG: %s", settings.front_url)
    if not settings.tg_init_data_secret:
        logger.warning("TG_INIT_DATA_SECRET/TG_BOT_TOKEN not set: X-Telegram-Init-Data accepted without signature check")
    logger.info(
        "player not found policy: %s, resources sync mode: %s",
        settings.player_not_found_policy,
        settings.resources_sync_mode,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Пул БД и схема при старте, закрытие при остановке. Готовый store (тесты) не трогаем."""
    settings: Settings = app.state.settings
    own_store = app.state.store is None
    if own_store:
        app.state.store = await init_db(settings)
    own_http = app.state.http is None
    if own_http:
        app.state.http = httpx.AsyncClient(timeout=10.0)
    _log_startup(settings)
    yield
    if own_http:
        await app.state.http.aclose()
        app.state.http = None
    if own_store:
        await close_db(app.state.store)
        app.state.store = None


async def metaville_error_handler(request: Request, exc: MetavilleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s %s", request.method, request.url.path, exc.code, exc, exc.details)
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.code})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"ok": False, "error": "validation_error"})


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"ok": False, "error": "rate_limited"})


async def exception_handler_500(request: Request, exc: Exception) -> JSONResponse:
    """Необработанные исключения: 500 без stack trace. HTTPException обрабатывает FastAPI."""
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"ok": False, "error": "server_error"})


def create_app(settings: Optional[Settings] = None, store=None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_limiter(settings)

    app = FastAPI(title="Metaville API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.http = http_client
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.front_origins) or ["*"],
        allow_credentials=True,
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
    )
    app.add_middleware(OriginGuardMiddleware, allowed_origins=settings.front_origins)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)

    app.add_exception_handler(MetavilleError, metaville_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, exception_handler_500)

    app.include_router(player_router)
    app.include_router(webhook_router)

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "Metaville API is running"

    @app.get("/health")
    @app.get("/api/health")
    async def health(request: Request):
        """Живость + пробный SELECT 1 в БД."""
        if await request.app.state.store.ping():
            return {"ok": True}
        return JSONResponse(status_code=503, content={"ok": False})

    return app


_boot_settings = load_settings()
logging.basicConfig(level=getattr(logging, _boot_settings.log_level, logging.INFO))

app = create_app(_boot_settings)
