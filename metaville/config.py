import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_bool(key: str, default: bool) -> bool:
    raw = _env(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Известные ресурсы и их стартовые значения. Ключи вне этого списка от клиента отбрасываются.
DEFAULT_RESOURCES: Dict[str, float] = {
    "oxygen": 0,
    "energy": 0,
    "water": 0,
    "food": 0,
    "metal": 0,
    "credits": 0,
}

DEFAULT_CALLSIGN = "Citizen"

NOT_FOUND_POLICIES = ("null", "404", "create")
RESOURCES_SYNC_MODES = ("replace", "merge")


def _parse_origins(*raw_values: str) -> Tuple[str, ...]:
    """FRONT_ORIGINS / FRONT_ORIGIN: списки через запятую, без завершающего /."""
    origins: List[str] = []
    for raw in raw_values:
        for item in (raw or "").split(","):
            item = item.strip().rstrip("/")
            if item and item not in origins:
                origins.append(item)
    return tuple(origins)


def _parse_resource_defaults(raw: str) -> Dict[str, float]:
    """RESOURCE_DEFAULTS: JSON-объект, переопределяет стартовые значения известных ресурсов."""
    defaults = dict(DEFAULT_RESOURCES)
    if not raw.strip():
        return defaults
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("RESOURCE_DEFAULTS is not valid JSON, ignored: %s", e)
        return defaults
    if not isinstance(data, dict):
        logger.warning("RESOURCE_DEFAULTS must be a JSON object, ignored")
        return defaults
    for key, value in data.items():
        if key not in defaults:
            logger.warning("RESOURCE_DEFAULTS: unknown resource %r ignored", key)
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            defaults[key] = value
    return defaults


@dataclass(frozen=True)
class Settings:
    port: int = 8080
    database_url: str = "postgresql://localhost/metaville"
    db_pool_min: int = 1
    db_pool_max: int = 10
    front_origins: Tuple[str, ...] = ()
    front_url: str = ""
    tg_bot_token: str = ""
    tg_secret: str = ""
    tg_init_data_secret: str = ""
    init_data_max_age_seconds: int = 0
    player_not_found_policy: str = "null"
    resources_sync_mode: str = "replace"
    resource_defaults: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RESOURCES))
    rate_limit_enabled: bool = True
    api_rate_limit: str = "120/minute"
    max_body_bytes: int = 1024 * 1024
    log_level: str = "INFO"

    def __post_init__(self):
        if self.player_not_found_policy not in NOT_FOUND_POLICIES:
            raise ValueError(
                f"PLAYER_NOT_FOUND_POLICY must be one of {NOT_FOUND_POLICIES}, got {self.player_not_found_policy!r}"
            )
        if self.resources_sync_mode not in RESOURCES_SYNC_MODES:
            raise ValueError(
                f"RESOURCES_SYNC_MODE must be one of {RESOURCES_SYNC_MODES}, got {self.resources_sync_mode!r}"
            )

    @property
    def telegram_api(self) -> Optional[str]:
        if not self.tg_bot_token:
            return None
        return f"https://api.telegram.org/bot{self.tg_bot_token}"


def load_settings() -> Settings:
    """Собирает настройки из окружения (.env подхватывается при импорте модуля)."""
    bot_token = _env("TG_BOT_TOKEN", "").strip()
    return Settings(
        port=int(_env("PORT", "8080")),
        database_url=_env("DATABASE_URL", "postgresql://localhost/metaville"),
        db_pool_min=int(_env("DB_POOL_MIN", "1")),
        db_pool_max=int(_env("DB_POOL_MAX", "10")),
        front_origins=_parse_origins(_env("FRONT_ORIGINS"), _env("FRONT_ORIGIN")),
        front_url=_env("FRONT_URL", "").strip().rstrip("/"),
        tg_bot_token=bot_token,
        tg_secret=_env("TG_SECRET", "").strip(),
        # Подпись initData по умолчанию проверяется токеном бота
        tg_init_data_secret=_env("TG_INIT_DATA_SECRET", "").strip() or bot_token,
        init_data_max_age_seconds=int(_env("INIT_DATA_MAX_AGE_SECONDS", "0")),
        player_not_found_policy=_env("PLAYER_NOT_FOUND_POLICY", "null").strip().lower(),
        resources_sync_mode=_env("RESOURCES_SYNC_MODE", "replace").strip().lower(),
        resource_defaults=_parse_resource_defaults(_env("RESOURCE_DEFAULTS", "")),
        rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
        api_rate_limit=_env("API_RATE_LIMIT", "120/minute").strip(),
        log_level=_env("LOG_LEVEL", "INFO").strip().upper(),
    )
