"""
配置模块 (config)
================
1. schema.py：Pydantic 配置数据模型（会话、队列、模型白名单等）
2. loader.py：读写 ~/.lanebot/config.json，camelCase ↔ snake_case 自动转换
"""

from lanebot.config.loader import load_config, get_config_path
from lanebot.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
