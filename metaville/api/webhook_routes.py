"""
Вебхук Telegram-бота: на /start отвечает кнопкой, открывающей мини-приложение.
Telegram всегда получает 200, иначе он будет повторять апдейт.
"""
import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from metaville.infrastructure.telegram_notify import send_game_button

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tg", tags=["telegram"])


@router.post("/webhook")
async def tg_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    settings = request.app.state.settings
    if settings.tg_secret and not hmac.compare_digest(
        (x_telegram_bot_api_secret_token or "").encode(), settings.tg_secret.encode()
    ):
        return JSONResponse(status_code=401, content={"ok": False, "error": "unauthorized"})

    try:
        update = await request.json()
    except ValueError:
        logger.warning("tg webhook: body is not JSON")
        return {"ok": True}

    try:
        chat_id = start_chat_id(update)
        if chat_id is not None:
            await send_game_button(
                settings.telegram_api,
                chat_id,
                settings.front_url,
                client=getattr(request.app.state, "http", None),
            )
    except Exception:
        logger.exception("tg webhook: update not handled")
    return {"ok": True}


def start_chat_id(update: Any) -> Optional[int]:
    """chat.id сообщения с /start, иначе None. Апдейты чужой формы просто пропускаются."""
    message = update.get("message") if isinstance(update, dict) else None
    if not isinstance(message, dict):
        return None
    chat = message.get("chat")
    text = message.get("text")
    if not isinstance(chat, dict) or not isinstance(text, str):
        return None
    chat_id = chat.get("id")
    if not isinstance(chat_id, int) or isinstance(chat_id, bool):
        return None
    return chat_id if text.strip().startswith("/start") else None
