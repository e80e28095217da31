"""
Relay agent: resilient streaming sessions against LLM providers.
"""

from .agent import RelayAgent, create_agent
from .cancellation import CancellationToken
from .config import AgentConfig, load_config
from .errors import AgentError, ErrorKind
from .session_loop import SessionLoopController, SessionResult

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentError",
    "CancellationToken",
    "ErrorKind",
    "RelayAgent",
    "SessionLoopController",
    "SessionResult",
    "create_agent",
    "load_config",
]
