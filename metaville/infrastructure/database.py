"""
PostgreSQL через asyncpg: пул, схема и хранилище профилей игроков.

Sync одного игрока идёт в одной транзакции: строка блокируется SELECT … FOR UPDATE
(или создаётся INSERT … ON CONFLICT DO NOTHING и блокируется повторным SELECT),
профиль сводится в Python (core.reconcile) и пишется одним UPDATE.
Параллельные sync одного игрока выстраиваются в очередь на блокировке строки,
разных игроков — не мешают друг другу.
"""
import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from metaville.config import Settings, load_settings
from metaville.core.errors import EventsUnavailable, StorageError
from metaville.core.identity import Identity, link_identity, pick_profile
from metaville.core.reconcile import PartialProfile, PlayerProfile, default_profile, reconcile

logger = logging.getLogger(__name__)

PLAYER_COLUMNS = (
    "id, telegram_id, wallet_address, callsign, level, exp, "
    "resources, progress, stats, created_at, last_login"
)

# Идемпотентно: CREATE … IF NOT EXISTS, ADD COLUMN IF NOT EXISTS. Подгоняет и старые БД,
# где telegram_id был NOT NULL и кошельков не было.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS players (
        id             BIGSERIAL PRIMARY KEY,
        telegram_id    BIGINT UNIQUE,
        wallet_address TEXT UNIQUE,
        callsign       TEXT NOT NULL DEFAULT 'Citizen',
        level          INT  NOT NULL DEFAULT 1,
        exp            INT  NOT NULL DEFAULT 0,
        resources      JSONB NOT NULL DEFAULT '{}'::jsonb,
        progress       JSONB NOT NULL DEFAULT '{}'::jsonb,
        stats          JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login     TIMESTAMPTZ
    )
    """,
    "ALTER TABLE players ADD COLUMN IF NOT EXISTS wallet_address TEXT",
    "ALTER TABLE players ADD COLUMN IF NOT EXISTS created_at TIMESTAMPTZ NOT NULL DEFAULT now()",
    "ALTER TABLE players ADD COLUMN IF NOT EXISTS last_login TIMESTAMPTZ",
    "ALTER TABLE players ALTER COLUMN telegram_id DROP NOT NULL",
    "UPDATE players SET callsign = 'Citizen' WHERE callsign IS NULL",
    """
    ALTER TABLE players
      ALTER COLUMN callsign SET DEFAULT 'Citizen',
      ALTER COLUMN callsign SET NOT NULL,
      ALTER COLUMN level SET DEFAULT 1,
      ALTER COLUMN exp   SET DEFAULT 0
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS players_telegram_id_uq ON players(telegram_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS players_wallet_address_uq ON players(wallet_address)",
    """
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM pg_constraint WHERE conname = 'players_identity_present'
        ) THEN
            ALTER TABLE players ADD CONSTRAINT players_identity_present
                CHECK (telegram_id IS NOT NULL OR wallet_address IS NOT NULL);
        END IF;
    END $$
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id         BIGSERIAL PRIMARY KEY,
        player_id  BIGINT,
        type       TEXT NOT NULL,
        payload    JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_player ON events(player_id)",
)

STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


async def create_pool(settings: Settings) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min,
        max_size=settings.db_pool_max,
        command_timeout=60,
    )


async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("schema ok (players, events)")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json_obj(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return value if isinstance(value, dict) else {}


def _dumps(value: Dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False)


def row_to_profile(row: asyncpg.Record) -> PlayerProfile:
    return PlayerProfile(
        id=int(row["id"]),
        telegram_id=row["telegram_id"],
        wallet_address=row["wallet_address"],
        callsign=row["callsign"],
        level=int(row["level"]),
        exp=int(row["exp"]),
        resources=_json_obj(row["resources"]),
        progress=_json_obj(row["progress"]),
        stats=_json_obj(row["stats"]),
        created_at=row["created_at"],
        last_login=row["last_login"],
    )


class PlayerStore:
    """Хранилище игроков поверх пула. Пул создаёт и закрывает lifespan приложения."""

    def __init__(self, pool: asyncpg.Pool, settings: Settings):
        self.pool = pool
        self.settings = settings

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except STORAGE_ERRORS as e:
            logger.warning("db ping failed: %s", e)
            return False

    async def _select_for_update(self, conn: asyncpg.Connection, identity: Identity) -> List[PlayerProfile]:
        rows = await conn.fetch(
            f"""SELECT {PLAYER_COLUMNS} FROM players
                WHERE telegram_id = $1 OR wallet_address = $2
                ORDER BY id
                FOR UPDATE""",
            identity.telegram_id,
            identity.wallet_address,
        )
        return [row_to_profile(r) for r in rows]

    async def _insert_stub(self, conn: asyncpg.Connection, identity: Identity) -> bool:
        """Пустая строка под новый ключ. False — кто-то успел создать её раньше."""
        new_id = await conn.fetchval(
            """INSERT INTO players (telegram_id, wallet_address, resources, last_login)
               VALUES ($1, $2, $3::jsonb, now())
               ON CONFLICT DO NOTHING
               RETURNING id""",
            identity.telegram_id,
            identity.wallet_address,
            _dumps(dict(self.settings.resource_defaults)),
        )
        return new_id is not None

    async def sync(self, identity: Identity, incoming: PartialProfile) -> PlayerProfile:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    existing = pick_profile(await self._select_for_update(conn, identity), identity)
                    created = False
                    if existing is None:
                        created = await self._insert_stub(conn, identity)
                        existing = pick_profile(await self._select_for_update(conn, identity), identity)
                        if existing is None:
                            raise StorageError("player row vanished after insert", {"identity": identity.describe()})
                    previous = None if created else existing
                    merged = reconcile(
                        previous,
                        incoming,
                        _now(),
                        resource_defaults=self.settings.resource_defaults,
                        resources_mode=self.settings.resources_sync_mode,
                    )
                    merged = link_identity(
                        replace(
                            merged,
                            id=existing.id,
                            telegram_id=existing.telegram_id,
                            wallet_address=existing.wallet_address,
                        ),
                        identity,
                    )
                    row = await conn.fetchrow(
                        f"""UPDATE players SET
                                telegram_id    = $2,
                                wallet_address = $3,
                                callsign       = $4,
                                level          = $5,
                                exp            = $6,
                                resources      = $7::jsonb,
                                progress       = $8::jsonb,
                                stats          = $9::jsonb,
                                created_at     = $10,
                                last_login     = $11
                            WHERE id = $1
                            RETURNING {PLAYER_COLUMNS}""",
                        merged.id,
                        merged.telegram_id,
                        merged.wallet_address,
                        merged.callsign,
                        merged.level,
                        merged.exp,
                        _dumps(merged.resources),
                        _dumps(merged.progress),
                        _dumps(merged.stats),
                        merged.created_at,
                        merged.last_login,
                    )
        except STORAGE_ERRORS as e:
            logger.exception("sync failed for %s", identity.describe())
            raise StorageError(str(e), {"identity": identity.describe()}) from e
        return row_to_profile(row)

    async def get(self, identity: Identity, create: bool = False, touch: bool = False) -> Optional[PlayerProfile]:
        """
        Профиль по telegram_id или кошельку. touch — обновить last_login,
        create — создать профиль по умолчанию, если его нет (гонка первых чтений гасится ON CONFLICT).
        """
        select_sql = f"""SELECT {PLAYER_COLUMNS} FROM players
                         WHERE telegram_id = $1 OR wallet_address = $2
                         ORDER BY (telegram_id = $1) DESC NULLS LAST, id
                         LIMIT 1"""
        try:
            async with self.pool.acquire() as conn:
                if touch:
                    row = await conn.fetchrow(
                        f"""UPDATE players SET last_login = now()
                            WHERE id = (
                                SELECT id FROM players
                                WHERE telegram_id = $1 OR wallet_address = $2
                                ORDER BY (telegram_id = $1) DESC NULLS LAST, id
                                LIMIT 1
                            )
                            RETURNING {PLAYER_COLUMNS}""",
                        identity.telegram_id,
                        identity.wallet_address,
                    )
                else:
                    row = await conn.fetchrow(select_sql, identity.telegram_id, identity.wallet_address)
                if row is None and create:
                    fresh = default_profile(_now(), self.settings.resource_defaults)
                    row = await conn.fetchrow(
                        f"""INSERT INTO players
                                (telegram_id, wallet_address, callsign, level, exp,
                                 resources, progress, stats, created_at, last_login)
                            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8::jsonb, $9, $10)
                            ON CONFLICT DO NOTHING
                            RETURNING {PLAYER_COLUMNS}""",
                        identity.telegram_id,
                        identity.wallet_address,
                        fresh.callsign,
                        fresh.level,
                        fresh.exp,
                        _dumps(fresh.resources),
                        _dumps(fresh.progress),
                        _dumps(fresh.stats),
                        fresh.created_at,
                        fresh.last_login,
                    )
                    if row is None:
                        # Параллельное первое чтение уже вставило строку
                        row = await conn.fetchrow(select_sql, identity.telegram_id, identity.wallet_address)
        except STORAGE_ERRORS as e:
            logger.exception("get player failed for %s", identity.describe())
            raise StorageError(str(e), {"identity": identity.describe()}) from e
        return row_to_profile(row) if row else None

    async def add_event(self, player_id: int, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            row = await self.pool.fetchrow(
                """INSERT INTO events (player_id, type, payload) VALUES ($1, $2, $3::jsonb)
                   RETURNING id, created_at""",
                player_id,
                event_type,
                _dumps(payload),
            )
        except asyncpg.UndefinedTableError as e:
            raise EventsUnavailable(str(e)) from e
        except STORAGE_ERRORS as e:
            logger.exception("event insert failed: player_id=%s type=%s", player_id, event_type)
            raise StorageError(str(e)) from e
        return {"id": int(row["id"]), "created_at": row["created_at"]}


async def init_db(settings: Settings) -> PlayerStore:
    pool = await create_pool(settings)
    try:
        await ensure_schema(pool)
    except Exception:
        await pool.close()
        raise
    return PlayerStore(pool, settings)


async def close_db(store: Optional[PlayerStore]) -> None:
    if store is not None and store.pool is not None:
        await store.pool.close()


async def _main() -> None:
    settings = load_settings()
    store = await init_db(settings)
    await close_db(store)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main())
