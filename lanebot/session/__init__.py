"""
会话层。

- store.py      : sessions.json 的加锁读-改-写与缓存
- keys.py       : 会话键解析与规范化
- reset.py      : 新鲜度与重置策略
- lifecycle.py  : 每条消息的会话状态初始化
- transcript.py : JSONL 对话记录、线程分叉与合并
- migrations.py : 存储格式迁移
- manage.py     : list / patch / reset / delete / compact 管理操作
"""

from lanebot.session.keys import (
    MessageContext,
    canonicalize_key,
    main_session_key,
    resolve_main_session_key,
    resolve_session_key,
)
from lanebot.session.store import load_session_store, update_session_entry, update_session_store

__all__ = [
    "MessageContext",
    "canonicalize_key",
    "load_session_store",
    "main_session_key",
    "resolve_main_session_key",
    "resolve_session_key",
    "update_session_entry",
    "update_session_store",
]
