"""
上下文构建器 (agent/context.py)

负责把会话记录（transcript）里的消息翻译成 LLM 的消息列表：
    1. [system]    身份 + 工作区引导文件 + 技能快照 + 当前会话信息
    2. [历史消息]  transcript 中的 user / assistant / toolResult
    3. [user]      本轮提示词

transcript 与 LLM 格式的对应关系：
    transcript                                        LLM (OpenAI 格式)
    {"role": "user", "content": str}                  {"role": "user", "content": str}
    {"role": "assistant", "content": [text 块, toolCall 块]}
                                                      {"role": "assistant", "content", "tool_calls"}
    {"role": "toolResult", "toolCallId", "toolName", "content"}
                                                      {"role": "tool", "tool_call_id", "name", "content"}

【Java 开发者类比】
    类似 PromptTemplateService + 一组 DTO 转换器（entity ↔ wire format）。

【二开提示】
    多智能体场景可以按 agent_id 切换 BOOTSTRAP_FILES 或身份描述。
"""

import json
import platform
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from lanebot.providers.base import LLMResponse, ToolCallRequest


class ContextBuilder:
    """
    组装系统提示词与消息列表。

    属性:
        workspace: 工作区路径
        BOOTSTRAP_FILES: 按顺序拼进系统提示词的工作区文件
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md"]

    def __init__(self, workspace: Path):
        self.workspace = workspace

    def build_system_prompt(
        self,
        skills_prompt: str | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
        session_key: str | None = None,
    ) -> str:
        """
        构建系统提示词，各部分用 "---" 分隔。

        参数:
            skills_prompt: 会话记录里 skillsSnapshot.prompt（新会话时生成的技能列表）
            channel / chat_id: 当前渠道与聊天
            session_key: 当前会话键
        """
        parts = [self._identity()]
        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)
        if skills_prompt:
            parts.append(skills_prompt)
        if channel or session_key:
            lines = ["## Current Session"]
            if channel:
                lines.append(f"Channel: {channel}")
            if chat_id:
                lines.append(f"Chat ID: {chat_id}")
            if session_key:
                lines.append(f"Session: {session_key}")
            parts.append("\n".join(lines))
        return "\n\n---\n\n".join(parts)

    def _identity(self) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        tz = time.strftime("%Z") or "UTC"
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"

        return f"""# lanebot

You are lanebot, a helpful AI assistant reachable from chat channels. You have tools to:
- Execute shell commands (exec)
- Read files (read_file) and list directories (list_dir)

## Current Time
{now} ({tz})

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace_path}
Custom skills live in {workspace_path}/skills/{{skill-name}}/SKILL.md

Reply directly with text. If nothing needs to be said, reply with exactly NO_REPLY.
To attach a file, put it on its own line as MEDIA: <path or url>."""

    def _load_bootstrap_files(self) -> str:
        parts = []
        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                parts.append(f"## {filename}\n\n{file_path.read_text(encoding='utf-8')}")
        return "\n\n".join(parts)

    def build_messages(
        self,
        history: list[dict[str, Any]],
        prompt: str,
        system_prompt: str,
    ) -> list[dict[str, Any]]:
        """
        构建完整消息列表。

        参数:
            history: transcript 中的消息（transcript 格式）
            prompt: 本轮提示词
            system_prompt: build_system_prompt() 的结果

        返回:
            可直接传给 provider.chat() 的消息列表
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(to_llm_messages(history))
        messages.append({"role": "user", "content": prompt})
        return messages


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def to_llm_messages(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """transcript 消息 → OpenAI 消息。无法识别的角色跳过。"""
    messages: list[dict[str, Any]] = []
    for message in history:
        role = message.get("role")
        content = message.get("content")
        if role == "user":
            messages.append({"role": "user", "content": _text_of(content)})
        elif role == "assistant":
            msg: dict[str, Any] = {"role": "assistant", "content": _text_of(content)}
            calls = [
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("arguments") or {}, ensure_ascii=False),
                    },
                }
                for block in (content if isinstance(content, list) else [])
                if isinstance(block, dict) and block.get("type") == "toolCall"
            ]
            if calls:
                msg["tool_calls"] = calls
            messages.append(msg)
        elif role == "toolResult":
            messages.append({
                "role": "tool",
                "tool_call_id": message.get("toolCallId"),
                "name": message.get("toolName"),
                "content": _text_of(content),
            })
    return messages


def assistant_message(response: LLMResponse) -> dict[str, Any]:
    """LLM 响应 → transcript 的 assistant 消息（文本块 + toolCall 块）。"""
    blocks: list[dict[str, Any]] = []
    if response.content:
        blocks.append({"type": "text", "text": response.content})
    for call in response.tool_calls:
        blocks.append({"type": "toolCall", "id": call.id, "name": call.name, "arguments": call.arguments})
    message: dict[str, Any] = {"role": "assistant", "content": blocks}
    if response.usage:
        message["usage"] = dict(response.usage)
    return message


def tool_result_message(call: ToolCallRequest, result: str) -> dict[str, Any]:
    return {
        "role": "toolResult",
        "toolCallId": call.id,
        "toolName": call.name,
        "content": [{"type": "text", "text": result}],
    }


def user_message(text: str) -> dict[str, Any]:
    return {"role": "user", "content": text}
