import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


async def record_event(store, player_id: Optional[int], event_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """
    Запись события «выстрелил и забыл»: запускается фоном после ответа,
    любая ошибка только логируется и не доходит до вызывающего sync.
    """
    if player_id is None:
        return False
    try:
        await store.add_event(player_id, event_type, payload or {})
        return True
    except Exception as e:
        logger.warning("record_event failed: player_id=%s type=%s: %s", player_id, event_type, e)
        return False
