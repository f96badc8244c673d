"""
Определение игрока по запросу. Источники по приоритету:
  1) тело запроса: telegramId / walletAddress
  2) query: ?tg= / ?wallet=
  3) заголовок X-Telegram-Init-Data (поле user.id)
Берётся первый источник, давший валидный идентификатор.
"""
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Sequence

from metaville.core.errors import IdentityConflict, IdentityRequired, SignatureInvalid
from metaville.infrastructure.telegram_init_data import (
    InitDataError,
    parse_init_data,
    telegram_user_id,
    validate_init_data,
)
from metaville.infrastructure.ton_address import canonical_wallet

logger = logging.getLogger(__name__)

# telegram_id и events.player_id — BIGINT
MAX_BIGINT = 2**63 - 1


@dataclass(frozen=True)
class Identity:
    telegram_id: Optional[int] = None
    wallet_address: Optional[str] = None
    source: str = ""

    def __bool__(self) -> bool:
        return self.telegram_id is not None or bool(self.wallet_address)

    def describe(self) -> str:
        parts = []
        if self.telegram_id is not None:
            parts.append(f"tg={self.telegram_id}")
        if self.wallet_address:
            parts.append(f"wallet={self.wallet_address}")
        return " ".join(parts) or "-"


def parse_platform_id(value: Any) -> Optional[int]:
    """Положительное целое в пределах BIGINT (число или строка из цифр), иначе None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if not isinstance(value, int) or not 0 < value <= MAX_BIGINT:
        return None
    return value


def parse_wallet(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    wallet = canonical_wallet(value)
    return wallet or None


def identity_from_values(telegram_value: Any, wallet_value: Any, source: str) -> Identity:
    return Identity(
        telegram_id=parse_platform_id(telegram_value),
        wallet_address=parse_wallet(wallet_value),
        source=source,
    )


def identity_from_path(value: str) -> Identity:
    """GET /player/{identity}: только цифры — telegram id, иначе адрес кошелька."""
    tg = parse_platform_id(value)
    if tg is not None:
        return Identity(telegram_id=tg, source="path")
    return Identity(wallet_address=parse_wallet(value), source="path")


def identity_from_init_data(
    init_data: Optional[str],
    secret: str = "",
    max_age_seconds: int = 0,
) -> Identity:
    """
    Идентичность из initData. С секретом — только после проверки подписи (иначе SignatureInvalid).
    Без секрета — доверяем как есть (режим разработки).
    """
    if not init_data or not init_data.strip():
        return Identity()
    if secret:
        try:
            fields = validate_init_data(init_data, secret, max_age_seconds=max_age_seconds)
        except InitDataError as e:
            logger.info("init data rejected: %s", e)
            raise SignatureInvalid(str(e))
    else:
        fields = parse_init_data(init_data)
    return Identity(telegram_id=parse_platform_id(telegram_user_id(fields)), source="init_data")


def resolve_identity(
    body: Optional[Mapping[str, Any]],
    query: Optional[Mapping[str, Any]],
    init_data: Optional[str],
    *,
    secret: str = "",
    max_age_seconds: int = 0,
) -> Identity:
    body = body or {}
    query = query or {}
    candidates = (
        lambda: identity_from_values(
            body.get("telegramId"), body.get("walletAddress", body.get("wallet")), "body"
        ),
        lambda: identity_from_values(query.get("tg"), query.get("wallet"), "query"),
        lambda: identity_from_init_data(init_data, secret, max_age_seconds),
    )
    for candidate in candidates:
        identity = candidate()
        if identity:
            return identity
    raise IdentityRequired("telegramId or walletAddress required")


def pick_profile(candidates: Sequence[Any], identity: Identity) -> Optional[Any]:
    """
    Из строк, найденных по telegram_id ИЛИ wallet_address, выбирает одну.
    Две разные строки или чужой уже привязанный ключ — IdentityConflict.
    """
    rows = list(candidates)
    if not rows:
        return None
    if len(rows) > 1:
        raise IdentityConflict(
            "telegramId and walletAddress belong to different players",
            {"identity": identity.describe()},
        )
    row = rows[0]
    if identity.telegram_id is not None and row.telegram_id not in (None, identity.telegram_id):
        raise IdentityConflict("wallet is linked to another telegram id", {"identity": identity.describe()})
    if identity.wallet_address and row.wallet_address not in (None, identity.wallet_address):
        raise IdentityConflict("telegram id is linked to another wallet", {"identity": identity.describe()})
    return row


def link_identity(profile: Any, identity: Identity) -> Any:
    """Дописывает в профиль недостающий ключ идентичности (привязка кошелька к telegram и наоборот)."""
    return replace(
        profile,
        telegram_id=profile.telegram_id if profile.telegram_id is not None else identity.telegram_id,
        wallet_address=profile.wallet_address or identity.wallet_address,
    )
