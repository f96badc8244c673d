"""
Общие фикстуры: настройки, хранилище игроков в памяти и TestClient к приложению.
Тесты с живым PostgreSQL (маркер db) берут TEST_DATABASE_URL и без него пропускаются.
"""
import copy
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from metaville.api.limits import limiter
from metaville.api.main import create_app
from metaville.config import Settings
from metaville.core.errors import StorageError
from metaville.core.identity import Identity, link_identity, pick_profile
from metaville.core.reconcile import PartialProfile, PlayerProfile, default_profile, reconcile

TEST_TELEGRAM_ID = 999001


class InMemoryPlayerStore:
    """Тот же интерфейс, что у PlayerStore, но словарь вместо таблицы players."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.players: Dict[int, PlayerProfile] = {}
        self.events: List[Dict[str, Any]] = []
        self.writes = 0
        self.healthy = True
        self.fail_sync = False
        self.fail_events = False
        self._next_id = 1

    def _matches(self, identity: Identity) -> List[PlayerProfile]:
        return [
            p for p in sorted(self.players.values(), key=lambda p: p.id)
            if (identity.telegram_id is not None and p.telegram_id == identity.telegram_id)
            or (identity.wallet_address and p.wallet_address == identity.wallet_address)
        ]

    def _save(self, profile: PlayerProfile) -> PlayerProfile:
        if profile.id is None:
            profile = replace(profile, id=self._next_id)
            self._next_id += 1
        self.players[profile.id] = copy.deepcopy(profile)
        self.writes += 1
        return copy.deepcopy(profile)

    async def ping(self) -> bool:
        return self.healthy

    async def sync(self, identity: Identity, incoming: PartialProfile) -> PlayerProfile:
        if self.fail_sync:
            raise StorageError("connection refused", {"identity": identity.describe()})
        existing = pick_profile(self._matches(identity), identity)
        merged = reconcile(
            copy.deepcopy(existing),
            incoming,
            datetime.now(timezone.utc),
            resource_defaults=self.settings.resource_defaults,
            resources_mode=self.settings.resources_sync_mode,
        )
        return self._save(link_identity(merged, identity))

    async def get(self, identity: Identity, create: bool = False, touch: bool = False) -> Optional[PlayerProfile]:
        rows = self._matches(identity)
        if rows:
            player = rows[0]
            if touch:
                player = self._save(replace(player, last_login=datetime.now(timezone.utc)))
            return copy.deepcopy(player)
        if not create:
            return None
        fresh = default_profile(datetime.now(timezone.utc), self.settings.resource_defaults)
        return self._save(link_identity(fresh, identity))

    async def add_event(self, player_id: int, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_events:
            raise StorageError("events insert failed")
        event = {
            "id": len(self.events) + 1,
            "player_id": player_id,
            "type": event_type,
            "payload": payload,
            "created_at": datetime.now(timezone.utc),
        }
        self.events.append(event)
        return {"id": event["id"], "created_at": event["created_at"]}


@pytest.fixture
def settings() -> Settings:
    return Settings(rate_limit_enabled=False, database_url="postgresql://unused/metaville")


@pytest.fixture
def store(settings) -> InMemoryPlayerStore:
    return InMemoryPlayerStore(settings)


def make_client(settings: Settings, store, **kwargs) -> TestClient:
    return TestClient(create_app(settings, store=store, **kwargs), raise_server_exceptions=False)


@pytest.fixture
def client(settings, store):
    """TestClient с хранилищем в памяти; lifespan отрабатывает, БД не нужна."""
    limiter.reset()
    with make_client(settings, store) as c:
        yield c


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("TEST_DATABASE_URL", "").strip()
    if not dsn:
        pytest.skip("TEST_DATABASE_URL не задан")
    return dsn
