"""
Turns terminal errors into error-event payloads with a user-facing hint.
"""

import json
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import AgentError, ErrorKind, ProviderError, SessionError

logger = logging.getLogger(__name__)

HINTS = {
    ErrorKind.RATE_LIMITED: "Provider is rate limiting requests. Wait for the quota window to reset or pick another model.",
    ErrorKind.RETRY_AFTER_EXCEEDS_TIMEOUT: (
        "Provider asked to wait longer than the configured retry timeout. "
        "Raise AGENT_RETRY_TIMEOUT or pick another model."
    ),
    ErrorKind.AUTH: "Verify the provider API key (environment variable or config) and that it has access to this model.",
    ErrorKind.MODEL_NOT_FOUND: "Check the model id; use provider/model to pin a provider explicitly.",
    ErrorKind.CONNECTION_STALLED: (
        "The stream stopped sending data. Check network connectivity or raise stream.chunk_timeout_ms."
    ),
    ErrorKind.TIMEOUT: "The step exceeded its time limit. Raise stream.step_timeout_ms for long generations.",
    ErrorKind.EMPTY_RESPONSE: (
        "Provider returned an empty response with no usage; the model may be overloaded or unavailable."
    ),
    ErrorKind.UNKNOWN_FINISH_REASON: (
        "Provider ended the step without a recognizable finish reason. Retry or pick another model."
    ),
    ErrorKind.PROVIDER_INIT: "Provider client could not be initialized; check the SDK installation and base_url.",
    ErrorKind.CONTENT_POLICY: "Provider rejected the request under its content policy.",
    ErrorKind.MAX_STEPS_EXCEEDED: "Session hit the step limit; raise max_steps if the task needs more tool turns.",
}

DEFAULT_HINT = "Verify provider credentials/quotas and model availability; rerun with a known-good model if needed."


def _root_cause(error: BaseException) -> BaseException:
    if isinstance(error, SessionError) and error.cause is not None:
        return error.cause
    return error


class ErrorHandler:
    """Builds error payloads and optionally writes a JSON snapshot per failure."""

    def __init__(self, output_json_path: Optional[str] = None):
        self.output_json_path = output_json_path

    def hint_for(self, error: BaseException) -> str:
        kind = getattr(error, "kind", None)
        hint = HINTS.get(kind)
        if hint is None:
            cause = _root_cause(error)
            hint = HINTS.get(getattr(cause, "kind", None), DEFAULT_HINT)
        return hint

    def handle_provider_error(self, error: BaseException, *, include_traceback: bool = False) -> Dict[str, Any]:
        """Error-event payload: stable kind, message, diagnostics and hint."""
        if isinstance(error, AgentError):
            payload = error.to_dict()
        else:
            payload = {"kind": ErrorKind.UNKNOWN, "name": error.__class__.__name__, "message": str(error)}

        cause = _root_cause(error)
        if isinstance(cause, ProviderError):
            payload.setdefault("provider_id", cause.provider_id)
            payload.setdefault("requested_model_id", cause.model_id)
            payload.setdefault("responded_model_id", cause.responded_model_id)
            if cause.retry_after_ms is not None:
                payload.setdefault("retry_after_ms", cause.retry_after_ms)

        payload["hint"] = self.hint_for(error)
        if include_traceback and error.__traceback__ is not None:
            payload["traceback"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        self.write_error_snapshot(payload)
        return payload

    def handle_execution_error(self, error: Exception, tool_name: str, tool_args: Any) -> Dict[str, Any]:
        return {
            "error": str(error),
            "function": tool_name,
            "args": tool_args,
            "error_type": "execution_error",
        }

    def write_error_snapshot(self, error_result: Dict[str, Any]) -> None:
        if not self.output_json_path:
            return
        try:
            Path(self.output_json_path).write_text(json.dumps(error_result, indent=2, default=str))
        except (OSError, ValueError, TypeError):
            logger.debug("could not write error snapshot", exc_info=True)
