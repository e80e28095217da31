"""
Tool executor contract.

The session loop only needs two things from tools: schemas to advertise to the
provider and a way to run a requested call. Concrete file or shell tools are
supplied by the embedding application.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .state.session_state import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ToolSpec:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ToolExecutor:
    """Interface the session loop uses to run tool calls."""

    def specs(self) -> List[ToolSpec]:
        return []

    async def execute(self, call: ToolCall) -> ToolResult:
        raise NotImplementedError


class NullToolExecutor(ToolExecutor):
    """Reports every call as an unknown tool so the model can recover."""

    async def execute(self, call: ToolCall) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            output=f"Tool '{call.name}' is not available",
            is_error=True,
        )


ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]


def _parse_arguments(arguments: Any) -> Dict[str, Any]:
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        parsed = json.loads(arguments)
        if isinstance(parsed, dict):
            return parsed
        raise ValueError("tool arguments must decode to a JSON object")
    raise ValueError(f"unsupported tool argument type {type(arguments).__name__}")


class FunctionToolExecutor(ToolExecutor):
    """Runs plain (sync or async) Python callables registered by name."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolHandler] = {}
        self._specs: Dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._tools[name] = handler
        spec = ToolSpec(name=name, description=description)
        if parameters is not None:
            spec.parameters = parameters
        self._specs[name] = spec

    def specs(self) -> List[ToolSpec]:
        return list(self._specs.values())

    async def execute(self, call: ToolCall) -> ToolResult:
        handler = self._tools.get(call.name)
        if handler is None:
            return await NullToolExecutor().execute(call)
        try:
            kwargs = _parse_arguments(call.arguments)
            result = handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # tool failures are reported back to the model
            logger.info("tool %s failed: %s", call.name, exc)
            return ToolResult(tool_call_id=call.id, name=call.name, output=f"Error: {exc}", is_error=True)
        if not isinstance(result, str):
            try:
                result = json.dumps(result)
            except (TypeError, ValueError):
                result = str(result)
        return ToolResult(tool_call_id=call.id, name=call.name, output=result)
