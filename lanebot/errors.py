"""
异常定义模块 (errors.py)

模块职责：
    集中定义 lanebot 的异常层级，调用方按异常类型决定如何向用户反馈：
    - StoreLockTimeout：锁竞争超时，属于可重试错误（"稍后再试"）
    - DirectiveError：指令/模型引用非法，直接把 message 回复给用户
    - SessionOperationError：会话管理操作被拒绝（如删除主会话）

【Java 开发者类比】
    相当于一组继承自 RuntimeException 的业务异常，
    由 Controller 层（agent/loop.py、cli/commands.py）统一翻译成用户可见文本。
"""


class LanebotError(Exception):
    """lanebot 所有业务异常的基类。"""


class StoreLockTimeout(LanebotError):
    """
    获取会话存储锁超时。

    属性:
        lock_path: 锁文件路径
    """

    def __init__(self, lock_path: str):
        super().__init__(f"timeout acquiring session store lock: {lock_path}")
        self.lock_path = lock_path


class DirectiveError(LanebotError):
    """会话指令校验失败，message 即用户可见的错误提示。"""


class SessionOperationError(LanebotError):
    """会话管理操作校验失败（如删除主会话、会话仍在运行）。"""
