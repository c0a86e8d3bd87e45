"""通用工具函数包。"""

from lanebot.utils.helpers import ensure_dir, get_data_path, get_workspace_path, now_ms

__all__ = ["ensure_dir", "get_data_path", "get_workspace_path", "now_ms"]
