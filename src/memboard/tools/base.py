"""Tool interface for exposing memory operations to an LLM agent."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ToolResult:
    """What a tool call returns to the agent loop."""

    success: bool
    output: str
    error: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, output="", error=error)


# JSON Schema type name -> accepted Python types
_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def check_argument(key: str, spec: dict[str, Any], value: Any) -> str | None:
    """Check one argument against its JSON Schema property.

    Only type, enum and numeric bounds are checked.

    Returns:
        An error message, or None if the value is acceptable.
    """
    expected = spec.get("type")
    allowed = _TYPE_CHECKS.get(expected)
    if allowed is not None:
        # bool is an int subclass
        wrong_bool = isinstance(value, bool) and expected != "boolean"
        if wrong_bool or not isinstance(value, allowed):
            return f"Argument '{key}' must be of type {expected}"

    if "enum" in spec and value not in spec["enum"]:
        options = ", ".join(str(option) for option in spec["enum"])
        return f"Argument '{key}' must be one of: {options}"

    if expected in ("integer", "number"):
        if "minimum" in spec and value < spec["minimum"]:
            return f"Argument '{key}' must be >= {spec['minimum']}"
        if "maximum" in spec and value > spec["maximum"]:
            return f"Argument '{key}' must be <= {spec['maximum']}"
    return None


class Tool(ABC):
    """A callable operation described to the model by a JSON Schema."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Function name the model calls."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """When the model should use this tool."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema object describing the arguments."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        ...

    def get_schema(self) -> dict[str, Any]:
        """Schema entry in the chat completions ``tools`` format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate_args(self, args: dict[str, Any]) -> tuple[bool, str | None]:
        """Validate arguments against schema. Returns (valid, error_message).

        Arguments the schema does not describe are passed through.
        """
        schema = self.parameters
        missing = [name for name in schema.get("required", []) if name not in args]
        if missing:
            return False, f"Missing required argument: {missing[0]}"

        properties = schema.get("properties", {})
        for key, value in args.items():
            if key in properties:
                error = check_argument(key, properties[key], value)
                if error:
                    return False, error
        return True, None
