"""
LLM 提供者抽象。

- ToolCallRequest : LLM 返回的工具调用请求
- LLMResponse     : 统一响应格式（文本、工具调用、用量、推理内容）
- LLMProvider     : 所有提供者必须实现的接口

【Java 开发者类比】
    LLMProvider 相当于 interface，LLMResponse 相当于不可变 DTO。
    运行时（agent/runtime.py）只依赖这个接口，测试里用假的实现替换。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolCallRequest:
    """
    LLM 返回的工具调用请求。

    属性:
        id: 工具调用 ID（回传工具结果时用于关联）
        name: 工具名称
        arguments: 参数字典
    """
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMResponse:
    """
    LLM 的统一响应。

    属性:
        content: 文本内容（只有工具调用时可能为 None）
        tool_calls: 工具调用列表
        finish_reason: stop / tool_calls / length / error
        usage: {"prompt_tokens", "completion_tokens", "total_tokens"}
        reasoning_content: 推理过程（支持的模型才有）
    """
    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    reasoning_content: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"


class LLMProvider(ABC):
    """
    LLM 提供者接口。

    属性:
        api_key: API 密钥
        api_base: API 基础地址（代理、网关或本地部署）
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        thinking: str | None = None,
    ) -> LLMResponse:
        """
        发送对话补全请求。

        参数:
            messages: OpenAI 格式的消息列表
            tools: 工具定义（OpenAI function calling 格式）
            model: 模型引用 provider/model，None 使用默认模型
            max_tokens: 最大输出 token
            temperature: 采样温度
            thinking: 思考等级（off/minimal/low/medium/high/xhigh），None 表示不传

        返回:
            LLMResponse；调用失败时 finish_reason 为 "error"，不抛异常
        """
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        pass
