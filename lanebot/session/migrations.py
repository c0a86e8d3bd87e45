"""
会话存储迁移模块 (session/migrations.py)

模块职责：
    读取 sessions.json 时执行的唯一迁移入口。旧版字段名与旧版会话键都在这里升级，
    store.py 只调用 migrate_store()，lifecycle/manage 只调用 migrate_legacy_keys()，
    不在各处散落 if "provider" in entry 之类的兼容代码。

    新增一次重命名 = 在 FIELD_MIGRATIONS 末尾追加一个 (版本号, 函数)，
    每个函数必须幂等：对已迁移过的数据重复执行不产生变化。

【Java 开发者类比】
    类似 Flyway 的版本化迁移脚本（V1__rename_provider.sql），
    区别是这里在每次读取时惰性执行，而不是启动时一次性执行。
"""

from typing import Any, Callable

SessionStore = dict[str, dict[str, Any]]


def _rename(entry: dict[str, Any], old: str, new: str) -> None:
    """old 存在且 new 不存在时改名；两者都存在时丢弃 old。"""
    if old not in entry:
        return
    value = entry.pop(old)
    if new not in entry:
        entry[new] = value


def _v1_channel_fields(entry: dict[str, Any]) -> None:
    _rename(entry, "provider", "channel")
    _rename(entry, "lastProvider", "lastChannel")
    _rename(entry, "room", "groupId")


def _v2_elevated_bool(entry: dict[str, Any]) -> None:
    # 早期 elevated 存为布尔值
    value = entry.get("elevatedLevel")
    if isinstance(value, bool):
        entry["elevatedLevel"] = "on" if value else "off"


FIELD_MIGRATIONS: tuple[tuple[int, Callable[[dict[str, Any]], None]], ...] = (
    (1, _v1_channel_fields),
    (2, _v2_elevated_bool),
)

SCHEMA_VERSION = FIELD_MIGRATIONS[-1][0]


def migrate_store(store: SessionStore) -> SessionStore:
    """
    就地升级所有会话记录的字段，返回同一个 dict。

    非 dict 的记录（手工编辑损坏）直接丢弃。
    """
    for key in list(store.keys()):
        entry = store[key]
        if not isinstance(entry, dict):
            store.pop(key)
            continue
        for _version, step in FIELD_MIGRATIONS:
            step(entry)
    return store


def migrate_legacy_keys(store: SessionStore, canonical_key: str, legacy_keys: list[str]) -> dict[str, Any] | None:
    """
    把旧版会话键下的记录搬到规范键下（就地修改）。

    规范键已有记录时以它为准，旧键记录仅在 updatedAt 更新时覆盖；
    所有旧键在迁移后删除。

    参数:
        store: 会话存储（必须在 update_session_store 的锁内调用）
        canonical_key: 规范会话键
        legacy_keys: 可能存在的旧版键

    返回:
        迁移后规范键下的记录，不存在时返回 None
    """
    current = store.get(canonical_key)
    for legacy in legacy_keys:
        if legacy == canonical_key or legacy not in store:
            continue
        candidate = store.pop(legacy)
        if current is None or (candidate.get("updatedAt") or 0) > (current.get("updatedAt") or 0):
            current = candidate
    if current is not None:
        store[canonical_key] = current
    return current
