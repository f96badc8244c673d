"""
Сведение профиля игрока при sync: что пришло от клиента против того, что лежит в БД.

Политика по полям:
  displayName  — новое непустое значение, иначе прежнее, иначе "Citizen"
  level / exp  — храповик: max(прежнее, новое), никогда не уменьшаются
  resources    — нормализованный снимок клиента целиком заменяет прежний
                 (режим merge: поверх прежнего только присланные ключи)
  progress     — последний присланный целиком, без слияния
  stats        — неглубокое слияние, ключи клиента побеждают, старые ключи живут
  createdAt    — только при создании; lastSeenAt — всегда now

Функции чистые: без БД и без часов, now передаётся снаружи.
"""
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from metaville.config import DEFAULT_CALLSIGN, DEFAULT_RESOURCES

DEFAULT_LEVEL = 1
DEFAULT_EXP = 0
# Колонки level и exp — INT
MAX_INT4 = 2**31 - 1
DISPLAY_NAME_MAX_LENGTH = 64


class PartialProfile(BaseModel):
    """Тело POST /player/sync без полей идентичности. Любое поле может отсутствовать."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    display_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("displayName", "callsign"), max_length=DISPLAY_NAME_MAX_LENGTH
    )
    level: Optional[int] = Field(None, ge=0, le=MAX_INT4)
    experience: Optional[int] = Field(None, validation_alias=AliasChoices("experience", "exp"), ge=0, le=MAX_INT4)
    resources: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
    stats: Optional[Dict[str, Any]] = None


@dataclass
class PlayerProfile:
    id: Optional[int] = None
    telegram_id: Optional[int] = None
    wallet_address: Optional[str] = None
    callsign: str = DEFAULT_CALLSIGN
    level: int = DEFAULT_LEVEL
    exp: int = DEFAULT_EXP
    resources: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_RESOURCES))
    progress: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    def to_dto(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "telegramId": self.telegram_id,
            "walletAddress": self.wallet_address,
            "displayName": self.callsign,
            "level": self.level,
            "experience": self.exp,
            "resources": self.resources,
            "progress": self.progress,
            "stats": self.stats,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastSeenAt": self.last_login.isoformat() if self.last_login else None,
        }


def _coerce_amount(value: Any) -> float:
    """Число ресурса: конечное и >= 0, всё остальное (строки-мусор, NaN, минус, bool) → 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
        if value.is_integer():
            value = int(value)
    if not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if value < 0:
        return 0
    return value


def normalize_resources(
    incoming: Optional[Mapping[str, Any]],
    defaults: Mapping[str, Any] = DEFAULT_RESOURCES,
    base: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Полный набор известных ресурсов. Неизвестные ключи отбрасываются,
    отсутствующие берутся из base (если задан) или из defaults.
    """
    incoming = incoming or {}
    result: Dict[str, Any] = {}
    for name, default in defaults.items():
        if name in incoming:
            result[name] = _coerce_amount(incoming[name])
        elif base is not None and name in base:
            result[name] = _coerce_amount(base[name])
        else:
            result[name] = default
    return result


def default_profile(
    now: datetime,
    resource_defaults: Mapping[str, Any] = DEFAULT_RESOURCES,
) -> PlayerProfile:
    """Профиль новичка: те же значения, что даёт sync с пустым телом."""
    return reconcile(None, PartialProfile(), now, resource_defaults=resource_defaults)


def reconcile(
    previous: Optional[PlayerProfile],
    incoming: PartialProfile,
    now: datetime,
    *,
    resource_defaults: Mapping[str, Any] = DEFAULT_RESOURCES,
    resources_mode: str = "replace",
) -> PlayerProfile:
    """Следующее состояние профиля. previous=None — строки ещё нет."""
    prev = previous or PlayerProfile(resources=dict(resource_defaults))

    name = (incoming.display_name or "").strip()
    callsign = name or (previous.callsign if previous and previous.callsign else DEFAULT_CALLSIGN)

    level = max(prev.level if previous else DEFAULT_LEVEL, incoming.level if incoming.level is not None else DEFAULT_LEVEL)
    exp = max(prev.exp if previous else DEFAULT_EXP, incoming.experience if incoming.experience is not None else DEFAULT_EXP)

    if resources_mode == "merge":
        resources = normalize_resources(incoming.resources, resource_defaults, base=prev.resources)
    else:
        resources = normalize_resources(incoming.resources, resource_defaults)

    progress = dict(incoming.progress) if incoming.progress is not None else dict(prev.progress)

    stats = dict(prev.stats)
    if incoming.stats:
        stats.update(incoming.stats)

    return replace(
        prev,
        callsign=callsign,
        level=level,
        exp=exp,
        resources=resources,
        progress=progress,
        stats=stats,
        created_at=prev.created_at if previous and prev.created_at else now,
        last_login=now,
    )
