"""
指令层 - 解析并应用消息中的 /think、/verbose、/reasoning、/elevated、/model、/queue。

- parse.py           : 从正文中抽取指令，返回清理后的正文
- levels.py          : 各等级的取值归一化
- model_selection.py : 模型目录、别名、白名单与模糊匹配
- apply.py           : 纯指令消息的确认回复、内联指令的持久化、本轮生效等级
"""

from lanebot.directives.parse import ParsedDirectives, parse_directives

__all__ = ["ParsedDirectives", "parse_directives"]
