"""
Session state for the relay session loop
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from ..provider_routing import ModelDescriptor


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


class FinishReason(str, Enum):
    """Canonical reasons a step ended."""

    STOP = "stop"
    END_TURN = "end-turn"
    TOOL_CALLS = "tool-calls"
    CONTENT_FILTER = "content-filter"
    UNKNOWN = "unknown"


TERMINAL_FINISH_REASONS = frozenset(
    {FinishReason.STOP, FinishReason.END_TURN, FinishReason.CONTENT_FILTER}
)


class SessionStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TokenUsage:
    """Normalized token counts; every field is a finite, non-negative int."""

    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write

    def is_empty(self) -> bool:
        return self.total == 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "cache": {"read": self.cache_read, "write": self.cache_write},
        }


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Any = None
    provider_executed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    output: str
    is_error: bool = False
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "output": self.output,
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class Step:
    """One finished request/response turn. Immutable once built."""

    id: str
    finish_reason: FinishReason
    usage: TokenUsage
    provider_id: str
    requested_model_id: str
    responded_model_id: Optional[str]
    text: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_results: Tuple[ToolResult, ...] = ()
    cost: float = 0.0
    raw_metadata: Dict[str, Any] = field(default_factory=dict)

    def completed_tool_call_ids(self) -> List[str]:
        done = {result.tool_call_id for result in self.tool_results}
        return [call.id for call in self.tool_calls if call.id in done]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "finish_reason": self.finish_reason.value,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
            "provider_id": self.provider_id,
            "requested_model_id": self.requested_model_id,
            "responded_model_id": self.responded_model_id,
            "text": self.text,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "tool_results": [result.to_dict() for result in self.tool_results],
            "raw_metadata": dict(self.raw_metadata),
        }


@dataclass
class Message:
    """Append-only message; assistant messages accumulate steps."""

    role: str
    content: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("msg"))
    steps: List[Step] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def add_step(self, step: Step) -> None:
        self.steps.append(step)

    def to_provider_messages(self) -> List[Dict[str, Any]]:
        """Expand into provider-neutral chat messages (one per step for assistants)."""
        if self.role != "assistant":
            entry: Dict[str, Any] = {"role": self.role, "content": self.content or ""}
            if self.tool_call_id:
                entry["tool_call_id"] = self.tool_call_id
            if self.name:
                entry["name"] = self.name
            return [entry]

        if not self.steps:
            # replayed history has content but no steps
            return [{"role": "assistant", "content": self.content}] if self.content else []
        out: List[Dict[str, Any]] = []
        for step in self.steps:
            entry = {"role": "assistant", "content": step.text or None}
            if step.tool_calls:
                entry["tool_calls"] = [call.to_dict() for call in step.tool_calls]
            out.append(entry)
            for result in step.tool_results:
                out.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "name": result.name,
                        "content": result.output,
                    }
                )
        return out


class Session:
    """Conversation owned and mutated exclusively by the session loop."""

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.id = session_id or new_id("ses")
        self.messages: List[Message] = []
        self.current_model: Optional["ModelDescriptor"] = None
        self.created_at = time.time()
        self.status = SessionStatus.IDLE
        self.provider_metadata: Dict[str, Any] = {}
        if system_prompt:
            self.add_message(Message(role="system", content=system_prompt))
        for item in history or []:
            self.add_message(
                Message(
                    role=str(item.get("role", "user")),
                    content=item.get("content"),
                    tool_call_id=item.get("tool_call_id"),
                    name=item.get("name"),
                )
            )

    def add_message(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def add_user_message(self, content: str) -> Message:
        return self.add_message(Message(role="user", content=content))

    def begin_assistant_message(self) -> Message:
        return self.add_message(Message(role="assistant"))

    @property
    def steps(self) -> List[Step]:
        return [step for message in self.messages for step in message.steps]

    def conversation(self) -> List[Dict[str, Any]]:
        """Provider-neutral message list for the next step."""
        out: List[Dict[str, Any]] = []
        for message in self.messages:
            out.extend(message.to_provider_messages())
        return out

    # --- Provider metadata ----------------------------------------------------
    def set_provider_metadata(self, key: str, value: Any) -> None:
        self.provider_metadata[key] = value

    def get_provider_metadata(self, key: str, default: Any = None) -> Any:
        return self.provider_metadata.get(key, default)

    def create_snapshot(self) -> Dict[str, Any]:
        """Create a session snapshot for debugging and persistence"""
        model = self.current_model
        return {
            "id": self.id,
            "created_at": self.created_at,
            "status": self.status.value,
            "model": model.to_dict() if model is not None else None,
            "messages": [
                {
                    "id": message.id,
                    "role": message.role,
                    "content": message.content,
                    "steps": [step.to_dict() for step in message.steps],
                }
                for message in self.messages
            ],
            "provider_metadata": self.provider_metadata,
        }
