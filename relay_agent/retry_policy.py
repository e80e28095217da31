"""
Retry policy for transient provider failures.

The engine answers one question per failed attempt: wait how long, or give up.
It never sleeps itself; the session loop performs the (cancellable) wait and
reports the time actually spent through ``record_wait``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .config import RetryConfig
from .errors import AgentError, ErrorKind, ProviderError, RETRYABLE_KINDS

logger = logging.getLogger(__name__)

JITTER_MAX = 0.1


def _header(headers: Optional[Mapping[str, Any]], name: str) -> Optional[str]:
    if not headers:
        return None
    try:
        items = headers.items()
    except AttributeError:
        return None
    lowered = name.lower()
    for key, value in items:
        if str(key).lower() == lowered and value is not None:
            return str(value).strip()
    return None


def parse_retry_after(
    headers: Optional[Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Extract a retry hint in milliseconds from response headers.

    ``retry-after-ms`` wins over ``retry-after``; the latter may be seconds or
    an HTTP date. Unparseable or non-positive values yield ``None``.
    """
    raw_ms = _header(headers, "retry-after-ms")
    if raw_ms:
        try:
            value = float(raw_ms)
        except ValueError:
            value = None
        if value is not None and value > 0 and value != float("inf"):
            return value

    raw = _header(headers, "retry-after")
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds > 0 and seconds != float("inf"):
            return seconds * 1000.0
        return None

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    delta_ms = (when - current).total_seconds() * 1000.0
    return delta_ms if delta_ms > 0 else None


def classify_exception(exc: BaseException) -> str:
    """Retry class for an arbitrary exception; fatal kinds come back unchanged."""
    if isinstance(exc, AgentError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, EOFError)):
        return ErrorKind.CONNECTION_STALLED
    if isinstance(exc, json.JSONDecodeError):
        return ErrorKind.STREAM_PARSE
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.retryable and exc.kind in RETRYABLE_KINDS
    if isinstance(exc, AgentError):
        return False
    return classify_exception(exc) in RETRYABLE_KINDS


@dataclass
class RetryState:
    """Retry bookkeeping for one (session, error class) pair."""

    error_class: str
    window_start: float
    elapsed_retry_ms: float = 0.0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_class": self.error_class,
            "window_start": self.window_start,
            "elapsed_retry_ms": self.elapsed_retry_ms,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class RetryDecision:
    action: str  # retry | give_up
    delay_ms: int = 0
    reason: Optional[str] = None
    error_class: Optional[str] = None
    hint_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def retry(
        cls,
        delay_ms: float,
        *,
        error_class: str,
        hint_ms: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "RetryDecision":
        return cls("retry", int(round(delay_ms)), None, error_class, hint_ms, details or {})

    @classmethod
    def give_up(
        cls,
        reason: str,
        *,
        error_class: Optional[str] = None,
        hint_ms: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "RetryDecision":
        return cls("give_up", 0, reason, error_class, hint_ms, details or {})

    @property
    def should_retry(self) -> bool:
        return self.action == "retry"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action": self.action, "error_class": self.error_class}
        if self.should_retry:
            payload["delay_ms"] = self.delay_ms
        else:
            payload["reason"] = self.reason
        if self.hint_ms is not None:
            payload["hint_ms"] = self.hint_ms
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class RetryPolicyEngine:
    """Decides retry timing per session and error class."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._states: Dict[str, RetryState] = {}

    def _jitter(self) -> float:
        return self._rng.uniform(0.0, JITTER_MAX)

    def state_for(self, session_id: str) -> Optional[RetryState]:
        return self._states.get(session_id)

    def _state(self, session_id: str, error_class: str) -> RetryState:
        state = self._states.get(session_id)
        if state is None or state.error_class != error_class:
            if state is not None:
                logger.info(
                    "session %s: error class changed %s -> %s; resetting retry window",
                    session_id,
                    state.error_class,
                    error_class,
                )
            state = RetryState(error_class=error_class, window_start=self._clock())
            self._states[session_id] = state
        return state

    def decide(self, error: BaseException, attempt_number: int, session_id: str) -> RetryDecision:
        """Return ``retry(delay_ms)`` or ``give_up(reason)`` for a failed attempt.

        ``attempt_number`` is 1 for the first failure of the current step.
        """
        error_class = classify_exception(error)
        if not is_retryable(error):
            logger.info("session %s: %s is not retryable; giving up", session_id, error_class)
            return RetryDecision.give_up(error_class, error_class=error_class)

        state = self._state(session_id, error_class)
        state.attempts += 1
        budget_ms = self.config.timeout_for(error_class)

        limit = self.config.max_attempts_per_class.get(error_class)
        if limit is not None and state.attempts > limit:
            logger.info(
                "session %s: %s exceeded %d attempts; giving up", session_id, error_class, limit
            )
            return RetryDecision.give_up(
                ErrorKind.RETRY_EXHAUSTED,
                error_class=error_class,
                details={"attempts": state.attempts - 1, "max_attempts": limit},
            )

        hint_ms = error.retry_after_ms if isinstance(error, ProviderError) else None
        if hint_ms is not None and hint_ms > 0:
            if hint_ms > budget_ms:
                logger.info(
                    "session %s: retry-after %.0fms exceeds budget %dms; giving up",
                    session_id,
                    hint_ms,
                    budget_ms,
                )
                return RetryDecision.give_up(
                    ErrorKind.RETRY_AFTER_EXCEEDS_TIMEOUT,
                    error_class=error_class,
                    hint_ms=hint_ms,
                    details={"budget_ms": budget_ms},
                )
            delay_ms = hint_ms * (1.0 + self._jitter())
        else:
            hint_ms = None
            has_headers = isinstance(error, ProviderError) and error.has_headers
            cap_ms = self.config.max_retry_delay_ms if has_headers else self.config.max_delay_no_headers_ms
            attempt = max(1, int(attempt_number or 1))
            backoff = self.config.initial_delay_ms * (self.config.backoff_factor ** (attempt - 1))
            delay_ms = min(backoff, cap_ms) * (1.0 + self._jitter())

        if state.elapsed_retry_ms + delay_ms > budget_ms:
            logger.info(
                "session %s: %s retry budget exhausted (%.0fms spent, next %.0fms, budget %dms)",
                session_id,
                error_class,
                state.elapsed_retry_ms,
                delay_ms,
                budget_ms,
            )
            return RetryDecision.give_up(
                ErrorKind.RETRY_EXHAUSTED,
                error_class=error_class,
                hint_ms=hint_ms,
                details={"elapsed_retry_ms": state.elapsed_retry_ms, "budget_ms": budget_ms},
            )

        logger.info(
            "session %s: retrying %s in %.0fms (attempt %d)", session_id, error_class, delay_ms, attempt_number
        )
        return RetryDecision.retry(
            delay_ms,
            error_class=error_class,
            hint_ms=hint_ms,
            details={"attempt": attempt_number, "elapsed_retry_ms": state.elapsed_retry_ms},
        )

    def record_wait(self, session_id: str, waited_ms: float) -> None:
        state = self._states.get(session_id)
        if state is not None and waited_ms > 0:
            state.elapsed_retry_ms += waited_ms

    def clear(self, session_id: str) -> None:
        self._states.pop(session_id, None)
