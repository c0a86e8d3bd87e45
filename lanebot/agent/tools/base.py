"""
工具基类 (agent/tools/base.py)

运行时提供给 LLM 的每个工具都继承 Tool，子类声明 name / description / parameters，
实现 execute(**kwargs) 返回回给 LLM 的文本。

工具参数都是扁平对象（exec 的 command / working_dir，文件工具的 path），
所以 validate_params() 只检查顶层的必填项、类型和 enum，不做递归的 JSON Schema 校验。

【Java 开发者类比】
    interface + 模板方法：子类只实现 execute，校验与 function calling 定义由基类完成。
"""

from abc import ABC, abstractmethod
from typing import Any

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _type_matches(value: Any, json_type: str | None) -> bool:
    expected = _JSON_TYPES.get(json_type or "")
    if expected is None:
        return True
    # bool 是 int 的子类
    if isinstance(value, bool) and json_type in ("integer", "number"):
        return False
    return isinstance(value, expected)


class Tool(ABC):
    """运行时工具的抽象基类。"""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]: ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """
        执行工具。

        参数:
            **kwargs: 已通过校验的参数

        返回:
            str: 回给 LLM 的结果文本（错误也以文本返回）
        """

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """返回参数错误列表，空列表表示通过。"""
        props: dict[str, Any] = self.parameters.get("properties", {})
        errors = [f"missing required {key}" for key in self.parameters.get("required", []) if key not in params]
        for key, value in params.items():
            prop = props.get(key)
            if prop is None:
                continue
            if not _type_matches(value, prop.get("type")):
                errors.append(f"{key} should be {prop['type']}")
            elif "enum" in prop and value not in prop["enum"]:
                errors.append(f"{key} must be one of {prop['enum']}")
        return errors

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function calling 格式的工具定义。"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
