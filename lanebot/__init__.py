"""
lanebot - 多渠道会话网关

模块概述：
    本文件是 lanebot 包的入口文件（__init__.py），定义了包的元信息。
    lanebot 接收来自 Slack、Telegram、CLI 的消息，为每段对话维护持久化的
    会话状态，解析会话内指令（模型、思考等级、队列模式等），再把消息交给
    LLM Agent 运行时执行，最后把回复送回原渠道。

    核心功能：
    - 会话存储：文件锁保护的 sessions.json，多进程安全
    - 会话生命周期：会话键解析、空闲重置、线程会话分叉/合并
    - 会话指令：/think、/verbose、/reasoning、/elevated、/model、/queue
    - 运行协调：每个会话一条运行通道（lane），支持 steer/followup/collect/interrupt
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🛤️"
