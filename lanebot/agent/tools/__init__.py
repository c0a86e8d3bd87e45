"""运行时工具：exec / read_file / list_dir。"""

from lanebot.agent.tools.base import Tool
from lanebot.agent.tools.registry import ToolRegistry, build_tool_registry

__all__ = ["Tool", "ToolRegistry", "build_tool_registry"]
