"""
Ошибки домена Metaville. Каждая знает свой HTTP-статус и короткий код для клиента;
в main.py один обработчик превращает их в {"ok": false, "error": code}.
"""
from typing import Any, Dict, Optional


class MetavilleError(Exception):
    code = "server_error"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.details = details or {}


class IdentityRequired(MetavilleError):
    """Ни тело, ни query, ни initData не дали идентификатор игрока."""

    code = "identity_required"
    status_code = 400


class ValidationError(MetavilleError):
    code = "validation_error"
    status_code = 400


class SignatureInvalid(MetavilleError):
    """initData пришёл, секрет задан, а подпись не сошлась (или устарела)."""

    code = "signature_invalid"
    status_code = 401


class NotFound(MetavilleError):
    code = "not_found"
    status_code = 404


class IdentityConflict(MetavilleError):
    """telegramId и walletAddress указывают на разные строки players."""

    code = "identity_conflict"
    status_code = 409


class StorageError(MetavilleError):
    """Любой сбой БД. Детали только в логах, клиенту — server_error."""

    code = "server_error"
    status_code = 500


class EventsUnavailable(MetavilleError):
    """Таблицы events нет (старая БД без миграции)."""

    code = "events_table_missing"
    status_code = 501


class BadRequest(ValidationError):
    code = "bad_request"


class PayloadTooLarge(MetavilleError):
    """Тело больше MAX_BODY_BYTES, даже если Content-Length не прислан (chunked)."""

    code = "payload_too_large"
    status_code = 413
