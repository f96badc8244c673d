import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

START_TEXT = "Открыть игру 👇"
GAME_BUTTON_TEXT = "Metaville"


def start_message(chat_id: int, front_url: str) -> Dict[str, Any]:
    """Ответ на /start: одна inline-кнопка, открывающая мини-приложение."""
    return {
        "chat_id": chat_id,
        "text": START_TEXT,
        "reply_markup": {
            "inline_keyboard": [[{"text": GAME_BUTTON_TEXT, "web_app": {"url": front_url}}]],
        },
    }


async def send_game_button(
    telegram_api: Optional[str],
    chat_id: int,
    front_url: str,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    if not telegram_api or not front_url:
        logger.warning("TG_BOT_TOKEN or FRONT_URL not set, skip /start reply")
        return False
    url = f"{telegram_api}/sendMessage"
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=10.0) as own_client:
                r = await own_client.post(url, json=start_message(chat_id, front_url))
        else:
            r = await client.post(url, json=start_message(chat_id, front_url))
        if r.status_code != 200:
            logger.error("TG sendMessage failed: %s %s", r.status_code, r.text)
            return False
        logger.info("TG sendMessage ok: chat_id=%s", chat_id)
        return True
    except httpx.HTTPError as e:
        logger.exception("TG send error: %s", e)
        return False
