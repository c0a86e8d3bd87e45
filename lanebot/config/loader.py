"""
配置加载工具模块 (config/loader.py)
=================================
- 配置文件默认路径: ~/.lanebot/config.json
- 文件使用 camelCase，Python 内部使用 snake_case，加载/保存时自动转换
- 旧版字段在加载时迁移（_migrate_config）

注意：模型白名单的 key 形如 "openai/gpt-5"，属于数据而非字段名，转换时原样保留。
"""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.config.schema import Config

# value 为 "名称 → 配置" 映射的字段：key 是数据，不做命名风格转换
_DATA_KEYED_FIELDS = {"models", "reset_by_type", "reset_by_channel", "by_channel", "extra_headers"}


def get_config_path() -> Path:
    """获取默认配置文件路径: ~/.lanebot/config.json"""
    return Path.home() / ".lanebot" / "config.json"


def get_data_dir() -> Path:
    """获取 lanebot 数据目录。"""
    from lanebot.utils.helpers import get_data_path
    return get_data_path()


def load_config(config_path: Path | None = None) -> Config:
    """
    从 JSON 文件加载配置，文件不存在或损坏时返回默认配置。

    参数:
        config_path: 可选的配置文件路径

    返回:
        Config 配置对象实例
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}; using defaults")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """将配置对象以 camelCase JSON 保存。"""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _migrate_config(data: dict) -> dict:
    """
    旧版配置格式迁移。

    - session.resetTriggers 旧名 session.resetCommands
    - session.thread.historyLimit 旧名 session.thread.inheritParentLimit
    - tools.exec.restrictToWorkspace 提升为 tools.restrictToWorkspace
    """
    session = data.get("session", {})
    if "resetCommands" in session and "resetTriggers" not in session:
        session["resetTriggers"] = session.pop("resetCommands")
    thread = session.get("thread", {})
    if "inheritParentLimit" in thread and "historyLimit" not in thread:
        thread["historyLimit"] = thread.pop("inheritParentLimit")

    tools = data.get("tools", {})
    exec_cfg = tools.get("exec", {})
    if "restrictToWorkspace" in exec_cfg and "restrictToWorkspace" not in tools:
        tools["restrictToWorkspace"] = exec_cfg.pop("restrictToWorkspace")
    return data


def convert_keys(data: Any, _raw_keys: bool = False) -> Any:
    """递归地将 camelCase 键名转换为 snake_case（数据型 key 保持原样）。"""
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            key = k if _raw_keys else camel_to_snake(k)
            out[key] = convert_keys(v, _raw_keys=not _raw_keys and key in _DATA_KEYED_FIELDS)
        return out
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any, _raw_keys: bool = False) -> Any:
    """递归地将 snake_case 键名转换为 camelCase（数据型 key 保持原样）。"""
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            key = k if _raw_keys else snake_to_camel(k)
            out[key] = convert_to_camel(v, _raw_keys=not _raw_keys and k in _DATA_KEYED_FIELDS)
        return out
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """"maxTokens" → "max_tokens"。"""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """"max_tokens" → "maxTokens"。"""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
