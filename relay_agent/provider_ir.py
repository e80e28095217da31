"""Provider-agnostic stream events yielded by adapters to the step processor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


StreamEventType = Literal[
    "text-delta",
    "reasoning-delta",
    "tool-call",
    "tool-result",
    "step-finish",
    "error",
    "heartbeat",
]


@dataclass
class StreamEvent:
    """One incremental event from a provider stream.

    ``finish_reason`` and ``usage`` are only meaningful on ``step-finish`` and
    are left in whatever shape the provider produced; the step processor
    normalizes them.
    """

    type: StreamEventType
    text: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    arguments: Any = None
    output: Any = None
    is_error: bool = False
    provider_executed: bool = False
    finish_reason: Any = None
    usage: Any = None
    model: Optional[str] = None
    error: Optional[BaseException] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def text_delta(text: str) -> "StreamEvent":
        return StreamEvent(type="text-delta", text=text)

    @staticmethod
    def reasoning_delta(text: str) -> "StreamEvent":
        return StreamEvent(type="reasoning-delta", text=text)

    @staticmethod
    def tool_call(
        call_id: str,
        name: str,
        arguments: Any,
        *,
        provider_executed: bool = False,
    ) -> "StreamEvent":
        return StreamEvent(
            type="tool-call",
            tool_call_id=call_id,
            tool_name=name,
            arguments=arguments,
            provider_executed=provider_executed,
        )

    @staticmethod
    def tool_result(call_id: str, output: Any, *, name: Optional[str] = None, is_error: bool = False) -> "StreamEvent":
        return StreamEvent(type="tool-result", tool_call_id=call_id, tool_name=name, output=output, is_error=is_error)

    @staticmethod
    def step_finish(
        finish_reason: Any,
        usage: Any,
        *,
        model: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "StreamEvent":
        return StreamEvent(
            type="step-finish",
            finish_reason=finish_reason,
            usage=usage,
            model=model,
            metadata=dict(metadata or {}),
        )

    @staticmethod
    def error_event(error: BaseException) -> "StreamEvent":
        return StreamEvent(type="error", error=error)

    @staticmethod
    def heartbeat() -> "StreamEvent":
        """An upstream chunk with nothing to surface yet (role, usage or partial tool arguments)."""
        return StreamEvent(type="heartbeat")
