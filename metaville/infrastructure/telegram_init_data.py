"""
Telegram Web App initData: разбор и проверка подписи.
Схема Telegram: secret_key = HMAC_SHA256("WebAppData", bot_token),
hash = HMAC_SHA256(secret_key, "\n".join(sorted "key=value" без hash)).
"""
import hashlib
import hmac
import json
import time
from typing import Dict, Optional
from urllib.parse import parse_qsl


class InitDataError(ValueError):
    """initData не прошёл проверку (нет hash, неверная подпись, устарел)."""


def parse_init_data(init_data: str) -> Dict[str, str]:
    """Query-строка initData → словарь полей (hash включительно). parse_qsl уже декодирует значения."""
    return dict(parse_qsl((init_data or "").strip(), keep_blank_values=True))


def data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{k}={fields[k]}" for k in sorted(fields) if k != "hash")


def sign_init_data(fields: Dict[str, str], secret: str) -> str:
    """Hex-подпись для набора полей. Нужна и проверке, и тестам/локальной отладке клиента."""
    secret_key = hmac.new(b"WebAppData", secret.encode(), hashlib.sha256).digest()
    return hmac.new(secret_key, data_check_string(fields).encode(), hashlib.sha256).hexdigest()


def validate_init_data(
    init_data: str,
    secret: str,
    max_age_seconds: int = 0,
    now: Optional[float] = None,
) -> Dict[str, str]:
    """
    Проверка подписи initData. Возвращает поля (в т.ч. user как JSON-строка) или бросает InitDataError.
    max_age_seconds > 0 дополнительно отбрасывает initData со старым auth_date.
    """
    if not secret:
        raise InitDataError("missing secret")
    fields = parse_init_data(init_data)
    received_hash = fields.get("hash")
    if not received_hash:
        raise InitDataError("hash not found")
    computed = sign_init_data(fields, secret)
    if not hmac.compare_digest(computed, received_hash.lower()):
        raise InitDataError("invalid signature")
    if max_age_seconds > 0:
        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError:
            raise InitDataError("auth_date missing")
        current = time.time() if now is None else now
        if current - auth_date > max_age_seconds:
            raise InitDataError("init data expired")
    return fields


def telegram_user_id(fields: Dict[str, str]) -> Optional[int]:
    """Извлекает telegram user id из поля user (JSON)."""
    user_str = fields.get("user")
    if not user_str:
        return None
    try:
        user = json.loads(user_str)
        uid = user.get("id")
        return int(uid) if uid is not None else None
    except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
        return None
