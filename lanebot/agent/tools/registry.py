"""
工具注册表 (agent/tools/registry.py)

运行时每次运行按当前会话的 elevated 等级构建一份注册表：
    elevated=off 且 tools.restrict_to_workspace=true → exec / read_file / list_dir 都限制在工作区内
    elevated=on                                     → 解除工作区限制（危险命令黑名单仍然生效）
"""

from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.agent.tools.base import Tool
from lanebot.agent.tools.filesystem import ListDirTool, ReadFileTool
from lanebot.agent.tools.shell import ExecTool


class ToolRegistry:
    """按名称管理工具并执行调用。"""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, params: dict[str, Any]) -> str:
        """
        执行工具调用；未知工具、参数错误和执行异常都以 "Error: ..." 文本返回。
        """
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"
        try:
            errors = tool.validate_params(params)
            if errors:
                return f"Error: Invalid parameters for tool '{name}': " + "; ".join(errors)
            return await tool.execute(**params)
        except Exception as e:
            logger.warning(f"Tool {name} raised: {e}")
            return f"Error executing {name}: {str(e)}"

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def build_tool_registry(
    workspace: Path,
    *,
    exec_timeout: int = 60,
    restrict_to_workspace: bool = True,
    elevated: bool = False,
) -> ToolRegistry:
    """
    构建一次运行使用的工具集合。

    参数:
        workspace: 工作区目录（exec 的默认 cwd）
        exec_timeout: exec 超时秒数
        restrict_to_workspace: 配置是否限制在工作区
        elevated: 会话是否开启 elevated 模式

    返回:
        ToolRegistry: exec / read_file / list_dir
    """
    restricted = restrict_to_workspace and not elevated
    allowed_dir = workspace if restricted else None
    registry = ToolRegistry()
    registry.register(ExecTool(
        timeout=exec_timeout,
        working_dir=str(workspace),
        restrict_to_workspace=restricted,
    ))
    registry.register(ReadFileTool(allowed_dir=allowed_dir))
    registry.register(ListDirTool(allowed_dir=allowed_dir))
    return registry
