"""
会话重置策略模块 (session/reset.py)

模块职责：
    计算某个会话键适用的空闲阈值，并判断记录是否仍"新鲜"。
    阈值来源优先级：reset_by_channel[渠道] > reset_by_type[direct|group|thread] > idle_minutes。
    idle_minutes 为 0 表示永不过期。

状态机（每个会话键）：
    NEW → ACTIVE(新鲜) → STALE(空闲超时) → [重置] → NEW
"""

from dataclasses import dataclass

from lanebot.config.schema import SessionConfig
from lanebot.session.keys import is_thread_key

RESET_TYPES = ("direct", "group", "thread")


@dataclass(frozen=True)
class ResetPolicy:
    """
    解析后的重置策略。

    属性:
        reset_type: direct / group / thread
        idle_minutes: 空闲阈值（分钟），0 表示永不过期
    """
    reset_type: str
    idle_minutes: int

    @property
    def idle_ms(self) -> int | None:
        """空闲阈值（毫秒），永不过期时为 None。"""
        if self.idle_minutes <= 0:
            return None
        return self.idle_minutes * 60_000


def reset_type_for(session_key: str, chat_type: str | None) -> str:
    """会话键带线程后缀 → thread；群组/频道聊天 → group；其余 → direct。"""
    if is_thread_key(session_key):
        return "thread"
    if (chat_type or "").lower() in ("group", "channel", "room"):
        return "group"
    if ":group:" in session_key or ":channel:" in session_key:
        return "group"
    return "direct"


def resolve_reset_policy(cfg: SessionConfig, channel: str | None, reset_type: str) -> ResetPolicy:
    """按 渠道覆盖 > 类型覆盖 > 默认值 解析空闲阈值。"""
    minutes = cfg.idle_minutes
    if reset_type in cfg.reset_by_type:
        minutes = cfg.reset_by_type[reset_type]
    channel_key = (channel or "").strip().lower()
    if channel_key and channel_key in cfg.reset_by_channel:
        minutes = cfg.reset_by_channel[channel_key]
    return ResetPolicy(reset_type=reset_type, idle_minutes=max(0, int(minutes)))


def is_fresh(updated_at: int | None, now: int, policy: ResetPolicy) -> bool:
    """
    记录是否新鲜：now - updatedAt <= 阈值。

    参数:
        updated_at: 记录的 updatedAt（毫秒），缺失视为不新鲜
        now: 当前时间（毫秒）
        policy: 重置策略

    返回:
        bool: True 表示沿用原 sessionId
    """
    if updated_at is None:
        return False
    idle_ms = policy.idle_ms
    if idle_ms is None:
        return True
    return now - updated_at <= idle_ms
