import asyncio
import json
import os
import time

import pytest

from lanebot.errors import StoreLockTimeout
from lanebot.session.migrations import migrate_legacy_keys
from lanebot.session.store import (
    load_session_store,
    merge_session_entry,
    update_last_route,
    update_session_entry,
    update_session_store,
    with_lock,
)


def test_load_missing_or_corrupt_store_returns_empty(tmp_path):
    path = tmp_path / "sessions.json"
    assert load_session_store(path) == {}

    path.write_text("{not json", encoding="utf-8")
    assert load_session_store(path, skip_cache=True) == {}

    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert load_session_store(path, skip_cache=True) == {}


async def test_update_round_trip(store_path):
    def mutate(store):
        store["agent:main:main"] = {"sessionId": "s1", "updatedAt": 1, "label": "home"}
        return "ok"

    assert await update_session_store(store_path, mutate) == "ok"

    loaded = load_session_store(store_path)
    assert loaded["agent:main:main"]["label"] == "home"
    assert json.loads(store_path.read_text(encoding="utf-8"))["agent:main:main"]["sessionId"] == "s1"
    assert not os.path.exists(f"{store_path}.lock")


async def test_loaded_store_is_independent_copy(store_path):
    await update_session_store(store_path, lambda s: s.update({"k": {"sessionId": "a", "updatedAt": 1}}))
    first = load_session_store(store_path)
    first["k"]["sessionId"] = "mutated"
    assert load_session_store(store_path)["k"]["sessionId"] == "a"


async def test_concurrent_updates_are_serialized(store_path):
    async def bump(i):
        async def mutate(store):
            entry = store.setdefault("counter", {"sessionId": "c", "updatedAt": 0, "count": 0})
            current = entry["count"]
            await asyncio.sleep(0.001)
            entry["count"] = current + 1
        await update_session_store(store_path, mutate)

    await asyncio.gather(*(bump(i) for i in range(20)))
    assert load_session_store(store_path, skip_cache=True)["counter"]["count"] == 20


async def test_lock_timeout_when_held(store_path):
    store_path.parent.mkdir(parents=True, exist_ok=True)
    lock = store_path.parent / "sessions.json.lock"
    lock.write_text("{}", encoding="utf-8")

    with pytest.raises(StoreLockTimeout):
        async with with_lock(store_path, timeout_ms=100, poll_ms=10):
            pass
    assert lock.exists()


async def test_stale_lock_is_evicted(store_path):
    store_path.parent.mkdir(parents=True, exist_ok=True)
    lock = store_path.parent / "sessions.json.lock"
    lock.write_text("{}", encoding="utf-8")
    old = time.time() - 60
    os.utime(lock, (old, old))

    await update_session_store(store_path, lambda s: s.update({"k": {"sessionId": "x", "updatedAt": 1}}))
    assert load_session_store(store_path)["k"]["sessionId"] == "x"
    assert not lock.exists()


def test_merge_never_moves_updated_at_backwards():
    merged = merge_session_entry({"sessionId": "s", "updatedAt": 10**15}, {"updatedAt": 5})
    assert merged["updatedAt"] == 10**15
    assert merged["sessionId"] == "s"

    fresh = merge_session_entry(None, {"label": "x"})
    assert fresh["sessionId"]
    assert fresh["label"] == "x"


async def test_update_session_entry_does_not_create(store_path):
    assert await update_session_entry(store_path, "missing", lambda e: {"label": "x"}) is None
    assert "missing" not in load_session_store(store_path, skip_cache=True)


async def test_update_last_route_keeps_existing_account(store_path):
    await update_last_route(store_path, "k", channel="slack", to="C1", account_id="acct")
    entry = await update_last_route(store_path, "k", channel="slack", to="  ", account_id=None)
    assert entry["lastTo"] == "C1"
    assert entry["lastAccountId"] == "acct"


def test_legacy_fields_are_migrated_on_load(store_path):
    store_path.parent.mkdir(parents=True, exist_ok=True)
    store_path.write_text(json.dumps({
        "agent:main:main": {"sessionId": "a", "provider": "slack", "lastProvider": "slack", "room": "C9"},
        "agent:main:telegram:dm:1": {"sessionId": "b", "elevatedLevel": True},
        "broken": "not an entry",
    }), encoding="utf-8")

    store = load_session_store(store_path, skip_cache=True)
    main = store["agent:main:main"]
    assert (main["channel"], main["lastChannel"], main["groupId"]) == ("slack", "slack", "C9")
    assert "provider" not in main and "room" not in main
    assert store["agent:main:telegram:dm:1"]["elevatedLevel"] == "on"
    assert "broken" not in store


def test_legacy_keys_move_to_canonical_key():
    store = {
        "slack:group:C1": {"sessionId": "old", "updatedAt": 5},
        "agent:main:slack:group:C1": {"sessionId": "new", "updatedAt": 1},
    }
    moved = migrate_legacy_keys(store, "agent:main:slack:group:C1", ["slack:group:C1"])
    assert moved["sessionId"] == "old"
    assert list(store) == ["agent:main:slack:group:C1"]
