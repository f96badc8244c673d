import json
import logging
from typing import Any, Dict, Optional

import pydantic
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from metaville.api.limits import api_rate_limit, limiter
from metaville.config import Settings
from metaville.core.errors import BadRequest, IdentityRequired, NotFound, ValidationError
from metaville.core.identity import Identity, identity_from_path, parse_platform_id, resolve_identity
from metaville.core.reconcile import PartialProfile
from metaville.infrastructure.events import record_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["player"])

INIT_DATA_HEADER = "X-Telegram-Init-Data"


def get_store(request: Request):
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def _json_body(request: Request) -> Dict[str, Any]:
    """Тело как dict. Пустое тело — {}: идентичность может прийти в query или initData."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError("body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("body must be a JSON object")
    return data


def _identity(request: Request, body: Optional[Dict[str, Any]], settings: Settings) -> Identity:
    return resolve_identity(
        body,
        request.query_params,
        request.headers.get(INIT_DATA_HEADER),
        secret=settings.tg_init_data_secret,
        max_age_seconds=settings.init_data_max_age_seconds,
    )


def _partial_profile(body: Dict[str, Any]) -> PartialProfile:
    try:
        return PartialProfile.model_validate(body)
    except pydantic.ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError("invalid profile payload", {"fields": fields})


async def _lookup(store, settings: Settings, identity: Identity, touch: bool) -> Dict[str, Any]:
    policy = settings.player_not_found_policy
    player = await store.get(identity, create=policy == "create", touch=touch)
    if player is None and policy == "404":
        raise NotFound("player not found", {"identity": identity.describe()})
    return {"ok": True, "player": player.to_dto() if player else None}


@router.post("/player/sync")
@limiter.limit(api_rate_limit)
async def player_sync(
    request: Request,
    background_tasks: BackgroundTasks,
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    UPSERT профиля. Идентичность: тело → query (?tg, ?wallet) → X-Telegram-Init-Data.
    Все проверки до обращения к БД.
    """
    body = await _json_body(request)
    identity = _identity(request, body, settings)
    incoming = _partial_profile(body)
    logger.info(
        "sync: %s via %s origin=%s",
        identity.describe(),
        identity.source,
        request.headers.get("origin"),
    )
    player = await store.sync(identity, incoming)
    background_tasks.add_task(
        record_event,
        store,
        player.id,
        "sync",
        {"level": player.level, "experience": player.exp, "source": identity.source},
    )
    return {"ok": True, "player": player.to_dto()}


@router.get("/player")
@limiter.limit(api_rate_limit)
async def player_get_by_query(
    request: Request,
    touch: bool = False,
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """GET /api/player?tg=123 или ?wallet=… (или initData в заголовке)."""
    identity = _identity(request, None, settings)
    return await _lookup(store, settings, identity, touch)


@router.get("/player/{identity}")
@limiter.limit(api_rate_limit)
async def player_get(
    identity: str,
    request: Request,
    touch: bool = False,
    store=Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """Профиль по telegram id (только цифры) или адресу кошелька."""
    ident = identity_from_path(identity)
    if not ident:
        raise IdentityRequired("telegram id or wallet address required")
    return await _lookup(store, settings, ident, touch)


@router.post("/events")
@limiter.limit(api_rate_limit)
async def events_create(
    request: Request,
    store=Depends(get_store),
):
    """Лог игровых событий: {playerId, type, payload?} → {id, createdAt}."""
    body = await _json_body(request)
    player_id = parse_platform_id(body.get("playerId"))
    event_type = body.get("type")
    if player_id is None or event_type is None or not str(event_type).strip():
        raise BadRequest("playerId and type required")
    payload = body.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise BadRequest("payload must be an object")
    row = await store.add_event(player_id, str(event_type).strip(), payload)
    return {"ok": True, "id": row["id"], "createdAt": row["created_at"].isoformat()}
