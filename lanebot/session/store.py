"""
会话存储模块 (session/store.py)

模块职责：
    sessions.json 的唯一读写入口：会话键 → 会话记录（camelCase 字段的 dict）。
    多个进程（网关 + CLI）可能同时读写同一个文件，因此：
    - 读：load_session_store()，带短 TTL 缓存，文件 mtime 变化或本模块写入时失效
    - 写：update_session_store()，持有跨进程锁 → 绕过缓存重读 → 执行 mutator → 原子落盘
    任何持久化会话状态的修改都必须走 update_session_store()，直接写文件是 bug。

    锁实现：在 sessions.json 旁创建 sessions.json.lock（O_EXCL），内容为持有者 pid 与时间，
    冲突时每 25ms 轮询一次；锁文件超过 30 秒视为持有者崩溃，强制删除后重试；
    总等待超过 10 秒抛出 StoreLockTimeout。

【Java 开发者类比】
    - with_lock() 相当于 try (FileLock lock = channel.lock()) {...} 的异步版
    - update_session_store() 相当于 @Transactional 方法：锁内读-改-写
    - 缓存相当于 Caffeine 的 expireAfterWrite + 自定义失效条件

【二开提示】
    mutator 内部不要再调用同一路径的 update_session_store()，
    锁不可重入，会一直等到超时。
"""

import asyncio
import copy
import inspect
import json
import os
import sys
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger

from lanebot.errors import StoreLockTimeout
from lanebot.session.migrations import SessionStore, migrate_store
from lanebot.utils.helpers import now_ms

T = TypeVar("T")

DEFAULT_CACHE_TTL_MS = 45_000
LOCK_TIMEOUT_MS = 10_000
LOCK_POLL_MS = 25
LOCK_STALE_MS = 30_000


@dataclass
class _CacheEntry:
    """缓存项：深拷贝的存储内容 + 加载时刻 + 文件 mtime。"""
    store: SessionStore
    loaded_at: float
    mtime_ns: int | None


_STORE_CACHE: dict[str, _CacheEntry] = {}


def _cache_ttl_ms() -> int:
    raw = os.environ.get("LANEBOT_SESSION_CACHE_TTL_MS", "").strip()
    if not raw:
        return DEFAULT_CACHE_TTL_MS
    try:
        return max(0, int(raw))
    except ValueError:
        return DEFAULT_CACHE_TTL_MS


def _file_mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def invalidate_session_store_cache(store_path: str | Path) -> None:
    """使某个存储文件的读缓存失效。"""
    _STORE_CACHE.pop(str(Path(store_path)), None)


def clear_session_store_cache() -> None:
    """清空全部读缓存（测试与进程退出时使用）。"""
    _STORE_CACHE.clear()


def load_session_store(store_path: str | Path, *, skip_cache: bool = False) -> SessionStore:
    """
    读取会话存储。

    文件不存在、JSON 损坏或顶层不是对象时返回空 dict，绝不因此抛异常。
    返回前执行字段迁移（migrations.migrate_store）。

    参数:
        store_path: sessions.json 路径
        skip_cache: 为 True 时绕过缓存直接读盘（锁内重读必须使用）

    返回:
        SessionStore: 调用方可随意修改的独立副本
    """
    path = Path(store_path)
    cache_key = str(path)
    ttl_ms = _cache_ttl_ms()

    if not skip_cache and ttl_ms > 0:
        cached = _STORE_CACHE.get(cache_key)
        if cached is not None:
            fresh = (time.monotonic() - cached.loaded_at) * 1000 <= ttl_ms
            if fresh and cached.mtime_ns == _file_mtime_ns(path):
                return copy.deepcopy(cached.store)
            _STORE_CACHE.pop(cache_key, None)

    store: SessionStore = {}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            store = parsed
    except FileNotFoundError:
        pass
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable session store {path}: {e}")

    migrate_store(store)

    if not skip_cache and ttl_ms > 0:
        _STORE_CACHE[cache_key] = _CacheEntry(
            store=copy.deepcopy(store),
            loaded_at=time.monotonic(),
            mtime_ns=_file_mtime_ns(path),
        )
    return store


def _write_store(path: Path, store: SessionStore) -> None:
    """
    落盘（调用方必须已持有锁）。

    POSIX：写同目录临时文件后 os.replace，读者只会看到完整的旧文件或新文件。
    Windows：rename 在并发访问下不可靠，直接原地写，由锁保证串行。
    目录被外部删除时重建目录并直接写入。
    """
    invalidate_session_store_cache(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(store, indent=2, ensure_ascii=False)

    if sys.platform == "win32":
        try:
            path.write_text(payload, encoding="utf-8")
        except FileNotFoundError:
            pass
        return

    tmp = Path(f"{path}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except FileNotFoundError:
        # 目录在写入期间被清理
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")
    finally:
        tmp.unlink(missing_ok=True)


@asynccontextmanager
async def with_lock(
    store_path: str | Path,
    *,
    timeout_ms: int = LOCK_TIMEOUT_MS,
    poll_ms: int = LOCK_POLL_MS,
    stale_ms: int = LOCK_STALE_MS,
) -> AsyncIterator[Path]:
    """
    持有 store_path 的跨进程排他锁。

    用法:
        async with with_lock(path):
            ...  # 临界区

    参数:
        store_path: sessions.json 路径，锁文件为同目录下的 "<path>.lock"
        timeout_ms: 总等待上限，超过抛 StoreLockTimeout
        poll_ms: 冲突时的轮询间隔
        stale_ms: 锁文件 mtime 超过该时长视为陈旧并强制删除

    产出:
        Path: 锁文件路径
    """
    lock_path = Path(f"{store_path}.lock")
    started = time.monotonic()

    while True:
        try:
            with open(lock_path, "x", encoding="utf-8") as f:
                json.dump({"pid": os.getpid(), "startedAt": now_ms()}, f)
            break
        except FileNotFoundError:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            continue
        except FileExistsError:
            pass

        if (time.monotonic() - started) * 1000 > timeout_ms:
            raise StoreLockTimeout(str(lock_path))

        try:
            age_ms = time.time() * 1000 - lock_path.stat().st_mtime * 1000
        except FileNotFoundError:
            continue  # 持有者刚释放
        if age_ms > stale_ms:
            logger.warning(f"Evicting stale session store lock {lock_path} (age {int(age_ms)}ms)")
            lock_path.unlink(missing_ok=True)
            continue

        await asyncio.sleep(poll_ms / 1000)

    try:
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)


async def update_session_store(
    store_path: str | Path,
    mutator: Callable[[SessionStore], T | Awaitable[T]],
    **lock_opts: Any,
) -> T:
    """
    在锁内读-改-写会话存储，返回 mutator 的结果。

    参数:
        store_path: sessions.json 路径
        mutator: 接收存储 dict 并就地修改，可以是同步或异步函数
        **lock_opts: 透传给 with_lock（timeout_ms / poll_ms / stale_ms）

    返回:
        mutator 的返回值

    异常:
        StoreLockTimeout: 锁等待超时（可重试）
    """
    path = Path(store_path)
    async with with_lock(path, **lock_opts):
        store = load_session_store(path, skip_cache=True)
        result = mutator(store)
        if inspect.isawaitable(result):
            result = await result
        _write_store(path, store)
        return result


def merge_session_entry(existing: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    """
    浅合并补丁到已有记录上。

    sessionId 缺失时补发；updatedAt 取 (已有, 补丁, 当前时间) 的最大值，保证不回退。
    """
    base = existing or {}
    merged = {**base, **patch}
    merged["sessionId"] = patch.get("sessionId") or base.get("sessionId") or str(uuid.uuid4())
    merged["updatedAt"] = max(base.get("updatedAt") or 0, patch.get("updatedAt") or 0, now_ms())
    return merged


async def update_session_entry(
    store_path: str | Path,
    session_key: str,
    update_fn: Callable[[dict[str, Any]], dict[str, Any] | None],
) -> dict[str, Any] | None:
    """
    更新单条会话记录。

    参数:
        store_path: sessions.json 路径
        session_key: 会话键
        update_fn: 接收当前记录（副本），返回要合并的补丁；返回 None/空 dict 表示不修改

    返回:
        更新后的记录；记录不存在时返回 None（不会创建）
    """
    def mutate(store: SessionStore) -> dict[str, Any] | None:
        existing = store.get(session_key)
        if existing is None:
            return None
        patch = update_fn(dict(existing))
        if not patch:
            return existing
        entry = merge_session_entry(existing, patch)
        store[session_key] = entry
        return entry

    return await update_session_store(store_path, mutate)


async def update_last_route(
    store_path: str | Path,
    session_key: str,
    *,
    channel: str | None,
    to: str | None,
    account_id: str | None = None,
    thread_id: str | None = None,
) -> dict[str, Any]:
    """
    记录最近一次投递目标（心跳等后续事件按它回发），记录不存在时创建。

    to / account_id 为空白时沿用已有值。
    """
    def mutate(store: SessionStore) -> dict[str, Any]:
        existing = store.get(session_key)
        base = existing or {}
        patch: dict[str, Any] = {}
        if channel:
            patch["lastChannel"] = channel.strip()
        if to and to.strip():
            patch["lastTo"] = to.strip()
        if account_id and account_id.strip():
            patch["lastAccountId"] = account_id.strip()
        elif base.get("lastAccountId"):
            patch["lastAccountId"] = base["lastAccountId"]
        if thread_id:
            patch["lastThreadId"] = thread_id
        entry = merge_session_entry(existing, patch)
        store[session_key] = entry
        return entry

    return await update_session_store(store_path, mutate)


async def record_session_meta(
    store_path: str | Path,
    session_key: str,
    meta: dict[str, Any],
) -> dict[str, Any] | None:
    """合并展示元数据（displayName / subject / chatType 等），空值忽略，记录不存在时不创建。"""
    patch = {k: v for k, v in meta.items() if v not in (None, "")}
    if not patch:
        return None
    return await update_session_entry(store_path, session_key, lambda _entry: patch)
