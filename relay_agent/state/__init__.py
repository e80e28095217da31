"""
State management for relay sessions
"""

from .session_state import (
    FinishReason,
    Message,
    Session,
    SessionStatus,
    Step,
    TokenUsage,
    ToolCall,
    ToolResult,
)

__all__ = [
    "FinishReason",
    "Message",
    "Session",
    "SessionStatus",
    "Step",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
]
