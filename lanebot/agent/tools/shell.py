"""
exec 工具 (agent/tools/shell.py)

在工作区内执行 shell 命令，返回 stdout / stderr / 退出码。
安全保护：
    - 危险命令黑名单（rm -rf、格式化、关机、fork 炸弹等），elevated 模式下同样生效
    - restrict_to_workspace=True 时拒绝路径穿越和工作区外的绝对路径
"""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

from lanebot.agent.tools.base import Tool

MAX_OUTPUT_CHARS = 10000

DEFAULT_DENY_PATTERNS = [
    r"\brm\s+-[rf]{1,2}\b",
    r"\bdel\s+/[fq]\b",
    r"\brmdir\s+/s\b",
    r"\b(format|mkfs|diskpart)\b",
    r"\bdd\s+if=",
    r">\s*/dev/sd",
    r"\b(shutdown|reboot|poweroff)\b",
    r":\(\)\s*\{.*\};\s*:",
]


class ExecTool(Tool):
    """执行 shell 命令。"""

    def __init__(
        self,
        timeout: int = 60,
        working_dir: str | None = None,
        deny_patterns: list[str] | None = None,
        restrict_to_workspace: bool = True,
    ):
        self.timeout = timeout
        self.working_dir = working_dir
        self.deny_patterns = deny_patterns if deny_patterns is not None else list(DEFAULT_DENY_PATTERNS)
        self.restrict_to_workspace = restrict_to_workspace

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return "Execute a shell command and return its output. Use with caution."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "working_dir": {"type": "string", "description": "Optional working directory"},
            },
            "required": ["command"],
        }

    async def execute(self, command: str, working_dir: str | None = None, **kwargs: Any) -> str:
        cwd = working_dir or self.working_dir or os.getcwd()
        blocked = self._guard_command(command, cwd)
        if blocked:
            return blocked

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"Error: Command timed out after {self.timeout} seconds"
        except asyncio.CancelledError:
            # 运行被中止时一并结束子进程
            process.kill()
            raise

        parts = []
        if stdout:
            parts.append(stdout.decode("utf-8", errors="replace"))
        if stderr:
            text = stderr.decode("utf-8", errors="replace")
            if text.strip():
                parts.append(f"STDERR:\n{text}")
        if process.returncode != 0:
            parts.append(f"\nExit code: {process.returncode}")

        result = "\n".join(parts) if parts else "(no output)"
        if len(result) > MAX_OUTPUT_CHARS:
            result = result[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {len(result) - MAX_OUTPUT_CHARS} more chars)"
        return result

    def _guard_command(self, command: str, cwd: str) -> str | None:
        """返回拒绝原因；None 表示允许执行。"""
        lower = command.strip().lower()
        for pattern in self.deny_patterns:
            if re.search(pattern, lower):
                return "Error: Command blocked by safety guard (dangerous pattern detected)"

        if not self.restrict_to_workspace:
            return None

        if "../" in command or "..\\" in command:
            return "Error: Command blocked by safety guard (path traversal detected)"

        root = Path(cwd).resolve()
        for raw in re.findall(r"(?:^|[\s|>])(/[^\s\"'>]+)", command):
            try:
                path = Path(raw.strip()).resolve()
            except OSError:
                continue
            if path != root and root not in path.parents:
                return "Error: Command blocked by safety guard (path outside working dir)"
        return None
