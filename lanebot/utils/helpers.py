"""
通用辅助函数。

会话存储里所有时间字段（updatedAt、abortedLastRunAt 等）都是毫秒时间戳，
只在写会话记录头部时才转成 ISO 字符串。
"""

import re
import time
from datetime import datetime, timezone
from pathlib import Path

_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*]')


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """lanebot 数据根目录 ~/.lanebot（配置文件、会话存储、渠道媒体都在这下面）。"""
    return ensure_dir(Path.home() / ".lanebot")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    工具与技能使用的工作区目录。

    参数:
        workspace: 配置里的 agents.defaults.workspace；为空时用 ~/.lanebot/workspace
    """
    path = Path(workspace).expanduser() if workspace else get_data_path() / "workspace"
    return ensure_dir(path)


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_timestamp(ms: int | None = None) -> str:
    """毫秒时间戳 → "2026-01-02T03:04:05.678Z" 形式的 UTC 字符串。"""
    ts = (ms if ms is not None else now_ms()) / 1000
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """话题 ID 等外部值拼进记录文件名前，替换掉文件系统不允许的字符。"""
    return _UNSAFE_FILENAME.sub("_", name).strip()
