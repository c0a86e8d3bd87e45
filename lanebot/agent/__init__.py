"""
Agent 核心包 - 每条入站消息的处理流水线。

- loop.py          : AgentLoop，串起会话生命周期、指令、运行协调、运行时与回复分发
- coordinator.py   : RunCoordinator，按会话键（lane）决定新消息是立即运行、排队、转向还是打断
- runtime.py       : AgentRuntime，带工具的 LLM 循环，可协作中止
- dispatcher.py    : ReplyDispatcher，回复整理、发送策略、用量落盘
- abort.py         : 中止指令（stop / /stop ...）
- events.py        : RunEventBus，运行生命周期事件
- system_events.py : 会话级系统事件队列
- context.py       : 系统提示词与消息列表构建
- skills.py        : 工作区技能列表与快照

【二开提示】
    各模块互相之间只通过构造参数注入，包级别不做导入，
    使用方直接 from lanebot.agent.loop import AgentLoop。
"""
