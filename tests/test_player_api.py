"""
HTTP API игрока через TestClient: sync, чтение, ошибки. Хранилище — в памяти (conftest).
"""
import json
from dataclasses import replace
from datetime import datetime
from urllib.parse import urlencode

import pytest

from metaville.config import DEFAULT_RESOURCES
from metaville.core.errors import StorageError
from tests.conftest import TEST_TELEGRAM_ID, InMemoryPlayerStore, make_client
from tests.test_identity import BOT_TOKEN, RAW_WALLET, make_init_data

SYNC = "/api/player/sync"


def _sync(client, **body):
    return client.post(SYNC, json={"telegramId": TEST_TELEGRAM_ID, **body})


@pytest.mark.smoke
class TestHealth:
    def test_root_text(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert r.text == "Metaville API is running"

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health_ok(self, client, path):
        r = client.get(path)
        assert r.status_code == 200
        assert r.json() == {"ok": True}

    def test_health_db_down(self, client, store):
        store.healthy = False
        r = client.get("/health")
        assert r.status_code == 503
        assert r.json() == {"ok": False}


@pytest.mark.e2e
class TestSync:
    def test_first_sync_defaults(self, client):
        r = _sync(client)
        assert r.status_code == 200
        j = r.json()
        assert j["ok"] is True
        p = j["player"]
        assert p["telegramId"] == TEST_TELEGRAM_ID
        assert p["level"] == 1
        assert p["experience"] == 0
        assert p["displayName"] == "Citizen"
        assert p["resources"] == DEFAULT_RESOURCES
        assert p["progress"] == {}
        assert p["stats"] == {}
        assert p["createdAt"] and p["lastSeenAt"]

    def test_full_payload(self, client):
        r = _sync(
            client,
            displayName="Neo",
            level=3,
            experience=120,
            resources={"oxygen": 5, "bogus": 1},
            progress={"chapter": 1},
            stats={"runs": 2},
        )
        p = r.json()["player"]
        assert p["displayName"] == "Neo"
        assert p["level"] == 3
        assert p["experience"] == 120
        assert p["resources"]["oxygen"] == 5
        assert "bogus" not in p["resources"]
        assert p["progress"] == {"chapter": 1}
        assert p["stats"] == {"runs": 2}

    def test_legacy_field_names_accepted(self, client):
        p = _sync(client, callsign="Morpheus", exp=40).json()["player"]
        assert p["displayName"] == "Morpheus"
        assert p["experience"] == 40

    def test_level_and_exp_never_regress(self, client):
        _sync(client, level=5, experience=500)
        p = _sync(client, level=2, experience=100).json()["player"]
        assert p["level"] == 5
        assert p["experience"] == 500

    def test_stats_accumulate(self, client):
        _sync(client, stats={"a": 1})
        p = _sync(client, stats={"b": 2}).json()["player"]
        assert p["stats"] == {"a": 1, "b": 2}

    def test_resources_replace(self, client):
        _sync(client, resources={"oxygen": 10, "energy": 20})
        p = _sync(client, resources={"oxygen": 5}).json()["player"]
        assert p["resources"]["oxygen"] == 5
        assert p["resources"]["energy"] == 0

    def test_idempotent_resubmission(self, client, store):
        payload = {"level": 2, "experience": 50, "resources": {"water": 3}, "progress": {"x": 1}, "stats": {"k": 1}}
        first = _sync(client, **payload).json()["player"]
        second = _sync(client, **payload).json()["player"]
        first.pop("lastSeenAt")
        second.pop("lastSeenAt")
        assert first == second
        assert len(store.players) == 1

    def test_created_at_stable(self, client):
        created = _sync(client).json()["player"]["createdAt"]
        assert _sync(client, level=2).json()["player"]["createdAt"] == created

    def test_identity_from_query(self, client):
        r = client.post(f"{SYNC}?tg=31337", json={"level": 2})
        assert r.status_code == 200
        assert r.json()["player"]["telegramId"] == 31337

    def test_identity_from_init_data_header(self, client):
        r = client.post(SYNC, json={}, headers={"X-Telegram-Init-Data": make_init_data(4242)})
        assert r.status_code == 200
        assert r.json()["player"]["telegramId"] == 4242

    def test_empty_body_with_query_identity(self, client):
        r = client.post(f"{SYNC}?tg=7")
        assert r.status_code == 200
        assert r.json()["player"]["level"] == 1

    def test_wallet_identity_and_linking(self, client, store):
        by_wallet = client.post(SYNC, json={"walletAddress": RAW_WALLET, "level": 4}).json()["player"]
        assert by_wallet["telegramId"] is None
        assert by_wallet["walletAddress"].startswith("UQ")

        linked = client.post(
            SYNC, json={"walletAddress": RAW_WALLET, "telegramId": 555, "experience": 10}
        ).json()["player"]
        assert linked["id"] == by_wallet["id"]
        assert linked["telegramId"] == 555
        assert linked["level"] == 4

        via_tg = client.get("/api/player/555").json()["player"]
        assert via_tg["id"] == by_wallet["id"]
        assert len(store.players) == 1

    def test_identity_conflict(self, client):
        client.post(SYNC, json={"telegramId": 1})
        client.post(SYNC, json={"walletAddress": "0xwallet"})
        r = client.post(SYNC, json={"telegramId": 1, "walletAddress": "0xwallet"})
        assert r.status_code == 409
        assert r.json() == {"ok": False, "error": "identity_conflict"}


@pytest.mark.e2e
class TestSyncErrors:
    def test_identity_required_no_write(self, client, store):
        r = client.post(SYNC, json={"level": 3})
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "identity_required"}
        assert store.writes == 0
        assert store.events == []

    def test_telegram_id_out_of_bigint_range(self, client, store):
        r = client.post(SYNC, json={"telegramId": 10**20, "level": 2})
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "identity_required"}
        assert store.writes == 0

    def test_int_column_edge_accepted(self, client):
        p = _sync(client, level=2**31 - 1, experience=2**31 - 1).json()["player"]
        assert p["level"] == 2**31 - 1
        assert p["experience"] == 2**31 - 1

    def test_identity_required_empty_body(self, client, store):
        r = client.post(SYNC)
        assert r.status_code == 400
        assert r.json()["error"] == "identity_required"
        assert store.writes == 0

    @pytest.mark.parametrize("body", [
        {"resources": [1, 2]},
        {"resources": "oxygen"},
        {"progress": 5},
        {"stats": ["a"]},
        {"level": "high"},
        {"experience": -1},
        {"level": 2**31},
        {"experience": 2**40},
        {"exp": 2**31},
        {"displayName": "x" * 65},
    ])
    def test_malformed_payload(self, client, store, body):
        r = _sync(client, **body)
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "validation_error"}
        assert store.writes == 0

    def test_body_not_object(self, client):
        r = client.post(SYNC, content=b"[1, 2, 3]", headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"

    def test_invalid_json(self, client):
        r = client.post(SYNC, content=b"{oops", headers={"Content-Type": "application/json"})
        assert r.status_code == 400

    def test_storage_error_is_generic(self, client, store):
        store.fail_sync = True
        r = _sync(client, level=2)
        assert r.status_code == 500
        assert r.json() == {"ok": False, "error": "server_error"}
        assert "connection" not in r.text


@pytest.mark.security
class TestInitDataSignature:
    @pytest.fixture
    def signed_client(self, settings):
        signed = replace(settings, tg_init_data_secret=BOT_TOKEN)
        store = InMemoryPlayerStore(signed)
        with make_client(signed, store) as c:
            yield c, store

    def test_valid_signature(self, signed_client):
        client, _ = signed_client
        r = client.post(SYNC, json={}, headers={"X-Telegram-Init-Data": make_init_data(8080)})
        assert r.status_code == 200
        assert r.json()["player"]["telegramId"] == 8080

    def test_invalid_signature_401(self, signed_client):
        client, store = signed_client
        r = client.post(SYNC, json={}, headers={"X-Telegram-Init-Data": make_init_data(8080, secret="forged")})
        assert r.status_code == 401
        assert r.json() == {"ok": False, "error": "signature_invalid"}
        assert store.writes == 0

    def test_unsigned_header_401(self, signed_client):
        client, _ = signed_client
        unsigned = urlencode({"user": json.dumps({"id": 1})})
        r = client.post(SYNC, json={}, headers={"X-Telegram-Init-Data": unsigned})
        assert r.status_code == 401


@pytest.mark.e2e
class TestPlayerRead:
    def test_missing_player_null_by_default(self, client, store):
        r = client.get("/api/player/123")
        assert r.status_code == 200
        assert r.json() == {"ok": True, "player": None}
        assert store.writes == 0

    def test_read_after_sync(self, client):
        _sync(client, displayName="Ada", level=2)
        p = client.get(f"/api/player/{TEST_TELEGRAM_ID}").json()["player"]
        assert p["displayName"] == "Ada"
        assert p["level"] == 2

    def test_query_form(self, client):
        _sync(client, level=3)
        r = client.get("/api/player", params={"tg": TEST_TELEGRAM_ID})
        assert r.status_code == 200
        assert r.json()["player"]["level"] == 3

    def test_query_form_requires_identity(self, client):
        r = client.get("/api/player")
        assert r.status_code == 400
        assert r.json()["error"] == "identity_required"

    def test_wallet_path_any_form(self, client):
        client.post(SYNC, json={"walletAddress": RAW_WALLET})
        friendly = client.get(f"/api/player/{RAW_WALLET}").json()["player"]["walletAddress"]
        r = client.get(f"/api/player/{friendly}")
        assert r.json()["player"]["walletAddress"] == friendly

    def test_touch_updates_last_seen(self, client):
        before = _sync(client).json()["player"]["lastSeenAt"]
        after = client.get(f"/api/player/{TEST_TELEGRAM_ID}", params={"touch": "true"}).json()["player"]
        assert datetime.fromisoformat(after["lastSeenAt"]) >= datetime.fromisoformat(before)

    def test_not_found_policy_404(self, settings):
        strict = replace(settings, player_not_found_policy="404")
        with make_client(strict, InMemoryPlayerStore(strict)) as c:
            r = c.get("/api/player/123")
        assert r.status_code == 404
        assert r.json() == {"ok": False, "error": "not_found"}

    def test_not_found_policy_create(self, settings):
        auto = replace(settings, player_not_found_policy="create")
        store = InMemoryPlayerStore(auto)
        with make_client(auto, store) as c:
            first = c.get("/api/player/321").json()["player"]
            second = c.get("/api/player/321").json()["player"]
        assert first["telegramId"] == 321
        assert first["level"] == 1
        assert first["displayName"] == "Citizen"
        assert first["resources"] == DEFAULT_RESOURCES
        assert second["id"] == first["id"]
        assert len(store.players) == 1

    def test_storage_failure_on_read(self, client, store):
        async def broken(*args, **kwargs):
            raise StorageError("db down")

        store.get = broken
        r = client.get("/api/player/1")
        assert r.status_code == 500
        assert r.json() == {"ok": False, "error": "server_error"}
