"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 lanebot 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── agents        - Agent 默认参数、模型白名单与别名、等级默认值、运行超时
├── session       - 会话键作用域、重置策略、线程分叉、队列策略
├── channels      - 消息渠道配置（Slack / Telegram）
├── providers     - LLM 提供商配置（API Key、API Base URL 等）
├── gateway       - 网关进程配置（主机、端口、心跳）
└── tools         - 工具配置（Shell 执行超时、工作区限制）

对于 Java 开发者：
- BaseModel 类似 POJO/Record，自带字段验证和默认值
- BaseSettings 类似 @ConfigurationProperties，额外支持环境变量覆盖
- Literal[...] 相当于枚举类型约束，非法值在加载时就会报 ValidationError
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ConfigDict
from pydantic_settings import BaseSettings


# ==============================================================================
# 渠道配置模型
# ==============================================================================


class TelegramConfig(BaseModel):
    """Telegram 渠道配置。使用 Bot API 长轮询方式接收消息，论坛话题映射为 :topic: 会话。"""
    enabled: bool = False
    token: str = ""  # 从 @BotFather 获取的 Bot Token
    allow_from: list[str] = Field(default_factory=list)  # 允许的用户 ID 或用户名白名单
    proxy: str | None = None  # HTTP/SOCKS5 代理地址


class SlackDMConfig(BaseModel):
    """Slack 私聊（DM）策略配置。"""
    enabled: bool = True
    policy: str = "open"  # "open" | "allowlist"
    allow_from: list[str] = Field(default_factory=list)


class SlackConfig(BaseModel):
    """Slack 渠道配置。使用 Socket Mode 接收事件，线程回复映射为 :thread: 会话。"""
    enabled: bool = False
    bot_token: str = ""  # xoxb-...
    app_token: str = ""  # xapp-...，Socket Mode 必需
    group_policy: str = "mention"  # "mention" | "open" | "allowlist"
    group_allow_from: list[str] = Field(default_factory=list)
    reply_in_thread: bool = True  # 频道消息的回复是否落在线程里
    dm: SlackDMConfig = Field(default_factory=SlackDMConfig)


class ChannelsConfig(BaseModel):
    """所有消息渠道的聚合配置，默认全部关闭。"""
    slack: SlackConfig = Field(default_factory=SlackConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


# ==============================================================================
# Agent 配置
# ==============================================================================


class ModelEntryConfig(BaseModel):
    """
    白名单中单个模型的配置（agents.defaults.models 的 value）。

    key 为 "provider/model"，出现在 models 中即视为允许使用。
    """
    alias: str | None = None  # 别名，如 "fast"，可直接 /model fast
    context_window: int | None = None  # 覆盖目录中的上下文窗口
    supports_xhigh: bool | None = None  # 是否支持 xhigh 思考等级（None 表示沿用目录）


class AgentDefaults(BaseModel):
    """
    Agent 默认配置。

    等级默认值位于会话覆盖之下：单条消息指令 > 会话持久化覆盖 > 这里的默认值 > 全局默认。
    """
    agent_id: str = "main"  # Agent 标识，出现在会话键 agent:{agent_id}:... 中
    workspace: str = "~/.lanebot/workspace"
    model: str = "anthropic/claude-opus-4-5"  # 默认模型（provider/model）
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = 20
    models: dict[str, ModelEntryConfig] = Field(default_factory=dict)  # 模型白名单 + 别名；为空表示不限制
    model_fallbacks: list[str] = Field(default_factory=list)  # 主模型失败时依次尝试
    context_tokens: int | None = None  # 覆盖上下文 token 上限
    thinking_default: str | None = None  # off/minimal/low/medium/high/xhigh
    verbose_default: str = "off"
    reasoning_default: str = "off"
    elevated_default: str = "off"
    timeout_seconds: int = 600  # 单次运行超时，超时等同于中止


class AgentsConfig(BaseModel):
    """Agent 配置容器。"""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


# ==============================================================================
# 会话配置
# ==============================================================================


class ThreadConfig(BaseModel):
    """线程/话题会话的分叉配置。"""
    inherit_parent: bool = False  # 未显式给出父会话时，是否从 :thread:/:topic: 键推断父会话
    history_limit: int = 20  # 分叉时复制的父会话末尾消息条数（K）
    include_tool_results: bool = False  # 分叉时是否保留工具结果消息


class QueueConfig(BaseModel):
    """运行中收到新消息时的默认队列策略。"""
    mode: Literal["steer", "followup", "collect", "steer-backlog", "interrupt"] = "collect"
    debounce_ms: int = 1000  # 积压消息排空前的等待时间
    cap: int = 20  # 积压上限
    drop: Literal["old", "new", "summarize"] = "summarize"  # 超过上限时的丢弃策略
    by_channel: dict[str, str] = Field(default_factory=dict)  # 渠道级默认模式，如 {"slack": "steer"}


class SessionConfig(BaseModel):
    """
    会话配置。

    scope:
    - per-thread：线程消息追加 :thread:/:topic: 后缀，拥有独立会话（默认）
    - per-sender：线程消息并入父会话键
    - global：所有消息共享 "global" 会话
    dm_scope:
    - main：所有私聊合并进主会话 agent:{id}:{main_key}
    - per-sender：每个私聊对象一个会话
    """
    scope: Literal["per-sender", "per-thread", "global"] = "per-thread"
    dm_scope: Literal["main", "per-sender"] = "main"
    main_key: str = "main"  # 主会话别名，"main" 与它都会规范化为同一个键
    store: str = "~/.lanebot/agents/{agentId}/sessions/sessions.json"  # 会话存储路径模板
    reset_triggers: list[str] = Field(default_factory=lambda: ["/new", "/reset"])
    idle_minutes: int = 60  # 空闲多久后会话过期（0 表示永不过期）
    reset_by_type: dict[str, int] = Field(default_factory=dict)  # direct/group/thread → 空闲分钟
    reset_by_channel: dict[str, int] = Field(default_factory=dict)  # 渠道级空闲分钟，优先级最高
    thread: ThreadConfig = Field(default_factory=ThreadConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


# ==============================================================================
# LLM 提供商配置
# ==============================================================================


class ProviderConfig(BaseModel):
    """单个 LLM 提供商的配置。"""
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None


class ProvidersConfig(BaseModel):
    """所有 LLM 提供商的聚合配置，字段名与 providers/registry.py 的 ProviderSpec.name 一一对应。"""
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


# ==============================================================================
# 其他配置
# ==============================================================================


class HeartbeatConfig(BaseModel):
    """心跳配置：定期唤醒主会话检查 HEARTBEAT.md。"""
    enabled: bool = True
    interval_s: int = 30 * 60


class GatewayConfig(BaseModel):
    """网关进程配置。"""
    host: str = "0.0.0.0"
    port: int = 18790
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)


class ExecToolConfig(BaseModel):
    """Shell 命令执行工具配置。"""
    timeout: int = 60


class ToolsConfig(BaseModel):
    """
    工具总配置。

    restrict_to_workspace 为 True 时 exec 只能访问工作区；
    会话开启 elevated 后 exec 不再受此限制。
    """
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    restrict_to_workspace: bool = True


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    lanebot 根配置类。

    环境变量覆盖：前缀 LANEBOT_，嵌套分隔符 __，
    如 LANEBOT_SESSION__IDLE_MINUTES=120。
    """
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @property
    def workspace_path(self) -> Path:
        """展开后的工作区绝对路径。"""
        return Path(self.agents.defaults.workspace).expanduser()

    @property
    def agent_id(self) -> str:
        """默认 Agent 标识（规范化为小写）。"""
        return (self.agents.defaults.agent_id or "main").strip().lower() or "main"

    def store_path(self, agent_id: str | None = None) -> Path:
        """
        解析会话存储文件路径。

        参数:
            agent_id: Agent 标识，为 None 时使用默认 Agent

        返回:
            Path: 替换 {agentId} 占位符并展开 ~ 后的路径
        """
        raw = self.session.store.replace("{agentId}", agent_id or self.agent_id)
        return Path(raw).expanduser()

    def _match_provider(self, model: str | None = None) -> tuple["ProviderConfig | None", str | None]:
        """
        根据模型名称匹配提供商配置。

        先按 "provider/" 前缀精确匹配，再按关键词匹配，最后兜底返回第一个配置了 api_key 的提供商。
        """
        from lanebot.providers.registry import PROVIDERS
        model_lower = (model or self.agents.defaults.model).lower()
        prefix = model_lower.split("/", 1)[0] if "/" in model_lower else ""

        for spec in PROVIDERS:
            p = getattr(self.providers, spec.name, None)
            if p and p.api_key and prefix == spec.name:
                return p, spec.name

        for spec in PROVIDERS:
            p = getattr(self.providers, spec.name, None)
            if p and p.api_key and any(kw in model_lower for kw in spec.keywords):
                return p, spec.name

        for spec in PROVIDERS:
            p = getattr(self.providers, spec.name, None)
            if p and p.api_key:
                return p, spec.name
        return None, None

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """获取匹配的提供商配置。"""
        p, _ = self._match_provider(model)
        return p

    def get_provider_name(self, model: str | None = None) -> str | None:
        """获取匹配的提供商注册名称。"""
        _, name = self._match_provider(model)
        return name

    def get_api_base(self, model: str | None = None) -> str | None:
        """获取 API Base：显式配置优先，其次是网关类提供商的默认地址。"""
        from lanebot.providers.registry import find_by_name
        p, name = self._match_provider(model)
        if p and p.api_base:
            return p.api_base
        if name:
            spec = find_by_name(name)
            if spec and spec.is_gateway and spec.default_api_base:
                return spec.default_api_base
        return None

    model_config = ConfigDict(
        env_prefix="LANEBOT_",
        env_nested_delimiter="__"
    )
