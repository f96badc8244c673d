"""
Rate limit по IP (slowapi) на /api/*. Лимит читается при каждом запросе,
поэтому create_app может его перенастроить.

limiter один на процесс, как и его счётчики в памяти: create_app меняет лимит
и флаг enabled для всех приложений процесса сразу. В проде приложение одно;
тесты, собирающие несколько приложений, сбрасывают счётчики через limiter.reset().
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from metaville.config import Settings

limiter = Limiter(key_func=get_remote_address)

_current = {"api": "120/minute"}


def api_rate_limit() -> str:
    return _current["api"]


def configure_limiter(settings: Settings) -> None:
    """Применяет RATE_LIMIT_ENABLED и API_RATE_LIMIT к общему limiter процесса."""
    limiter.enabled = settings.rate_limit_enabled
    _current["api"] = settings.api_rate_limit
