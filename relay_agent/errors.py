"""Error taxonomy shared by the resolver, retry engine, step processor and session loop."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorKind:
    """Stable error-kind tags surfaced on ``error`` events."""

    # transient (governed by the retry policy)
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CONNECTION_STALLED = "connection_stalled"
    TIMEOUT = "timeout"
    STREAM_PARSE = "stream_parse"
    EMPTY_RESPONSE = "empty_response"

    # fatal
    AUTH = "auth"
    MODEL_NOT_FOUND = "model_not_found"
    BAD_REQUEST = "bad_request"
    CONTENT_POLICY = "content_policy"
    PROVIDER_INIT = "provider_init"

    # session level
    RETRY_EXHAUSTED = "retry_exhausted"
    RETRY_AFTER_EXCEEDS_TIMEOUT = "retry_after_exceeds_timeout"
    UNKNOWN_FINISH_REASON = "unknown_finish_reason"
    MAX_STEPS_EXCEEDED = "max_steps_exceeded"
    CANCELLED = "cancelled"
    CONFIG = "config"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.CONNECTION_STALLED,
        ErrorKind.TIMEOUT,
        ErrorKind.STREAM_PARSE,
        ErrorKind.EMPTY_RESPONSE,
    }
)

# Non-transient failures that say something about the provider itself rather
# than the request; these may retarget an implicit selection at a sibling.
HARD_PROVIDER_KINDS = frozenset(
    {
        ErrorKind.AUTH,
        ErrorKind.MODEL_NOT_FOUND,
        ErrorKind.PROVIDER_INIT,
    }
)


class AgentError(Exception):
    """Base class for every error the agent raises on purpose."""

    kind: str = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "name": self.__class__.__name__,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ConfigValidationError(AgentError):
    """Raised when configuration validation fails."""

    kind = ErrorKind.CONFIG


class ModelNotFoundError(AgentError):
    """Raised when a model string cannot be resolved to any provider."""

    kind = ErrorKind.MODEL_NOT_FOUND

    def __init__(
        self,
        model: str,
        *,
        provider_id: str = "unknown",
        suggestion: Optional[str] = None,
    ) -> None:
        message = suggestion or f'Model "{model}" not found'
        super().__init__(
            message,
            details={"provider_id": provider_id, "model_id": model},
        )
        self.provider_id = provider_id
        self.model_id = model
        self.suggestion = suggestion


class ProviderError(AgentError):
    """A failure attributed to one provider call.

    ``kind`` doubles as the retry class for transient failures.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        kind: str = ErrorKind.UNKNOWN,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        responded_model_id: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after_ms: Optional[float] = None,
        has_headers: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, kind=kind, details=details)
        self.provider_id = provider_id
        self.model_id = model_id
        self.responded_model_id = responded_model_id
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.has_headers = has_headers

    @property
    def is_hard_provider_failure(self) -> bool:
        return not self.retryable and self.kind in HARD_PROVIDER_KINDS

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "retryable": self.retryable,
                "provider_id": self.provider_id,
                "requested_model_id": self.model_id,
                "responded_model_id": self.responded_model_id,
            }
        )
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.retry_after_ms is not None:
            payload["retry_after_ms"] = self.retry_after_ms
        return payload


class RetryableProviderError(ProviderError):
    """Transient provider failure; the retry policy decides what happens next."""

    retryable = True


class FatalProviderError(ProviderError):
    """Provider failure that must never be retried."""

    retryable = False


class StreamStalledError(RetryableProviderError):
    """The chunk timer fired: the socket is open but no data arrives."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("kind", ErrorKind.CONNECTION_STALLED)
        super().__init__(message, **kwargs)


class StepTimeoutError(RetryableProviderError):
    """The step timer fired: one step exceeded its absolute ceiling."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("kind", ErrorKind.TIMEOUT)
        super().__init__(message, **kwargs)


class StepAnomalyError(RetryableProviderError):
    """A step finished with ``unknown`` reason and all-zero usage."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("kind", ErrorKind.EMPTY_RESPONSE)
        super().__init__(message, **kwargs)


class PackageInstallError(FatalProviderError):
    """Installing a provider SDK failed after bounded retries."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("kind", ErrorKind.PROVIDER_INIT)
        super().__init__(message, **kwargs)


class SessionError(AgentError):
    """Terminal session failure surfaced to the caller as one ``error`` event."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, kind=kind, details=details)
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if isinstance(self.cause, AgentError):
            payload["cause"] = self.cause.to_dict()
        elif self.cause is not None:
            payload["cause"] = {
                "name": self.cause.__class__.__name__,
                "message": str(self.cause),
            }
        return payload


class SessionCancelled(AgentError):
    """Raised inside the loop when the cancellation token fires."""

    kind = ErrorKind.CANCELLED


__all__ = [
    "AgentError",
    "ConfigValidationError",
    "ErrorKind",
    "FatalProviderError",
    "HARD_PROVIDER_KINDS",
    "ModelNotFoundError",
    "PackageInstallError",
    "ProviderError",
    "RETRYABLE_KINDS",
    "RetryableProviderError",
    "SessionCancelled",
    "SessionError",
    "StepAnomalyError",
    "StepTimeoutError",
    "StreamStalledError",
]
