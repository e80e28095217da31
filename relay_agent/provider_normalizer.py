"""
Boundary normalization for loosely-typed provider payloads.

``normalize_usage`` and ``normalize_finish_reason`` accept anything a provider
might send and never raise; ``compute_cost`` prices a normalized usage record.
"""

from __future__ import annotations

import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .provider_catalog import ModelCost
from .state.session_state import FinishReason, TokenUsage

logger = logging.getLogger(__name__)

_MAX_DEPTH = 4

_NESTED_TOTAL_KEYS = ("total", "value", "count", "tokens")

_NESTED_REASON_KEYS = ("unified", "type", "reason", "finishReason", "finish_reason", "value")

_FINISH_REASON_MAP = {
    "stop": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "stop-sequence": FinishReason.STOP,
    "end_turn": FinishReason.END_TURN,
    "end-turn": FinishReason.END_TURN,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool-calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
    "tool-use": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    "content-filter": FinishReason.CONTENT_FILTER,
    "safety": FinishReason.CONTENT_FILTER,
    "refusal": FinishReason.CONTENT_FILTER,
}

_USAGE_KEYS = {
    "input": ("input", "inputTokens", "input_tokens", "prompt_tokens", "promptTokens"),
    "output": ("output", "outputTokens", "output_tokens", "completion_tokens", "completionTokens"),
    "reasoning": ("reasoning", "reasoningTokens", "reasoning_tokens"),
    "cache_read": (
        "cache_read",
        "cachedInputTokens",
        "cached_input_tokens",
        "cache_read_input_tokens",
        "cacheReadInputTokens",
    ),
    "cache_write": (
        "cache_write",
        "cacheCreationInputTokens",
        "cache_creation_input_tokens",
        "cache_write_input_tokens",
    ),
}


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def safe_token_value(value: Any, _depth: int = 0) -> int:
    """Coerce one usage field to a finite, non-negative int. Never raises."""
    if value is None or isinstance(value, (bool, str, bytes)):
        return 0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except (OverflowError, ValueError):
            return 0
        if not math.isfinite(number) or number <= 0:
            return 0
        return int(number)
    if isinstance(value, Decimal):
        if not value.is_finite() or value <= 0:
            return 0
        return int(value)
    if _depth >= _MAX_DEPTH:
        return 0
    for key in _NESTED_TOTAL_KEYS:
        nested = _get_attr(value, key, None)
        if nested is not None:
            return safe_token_value(nested, _depth + 1)
    return 0


def _pick(raw: Any, keys: tuple) -> Any:
    for key in keys:
        value = _get_attr(raw, key, None)
        if value is not None:
            return value
    return None


def normalize_usage(raw: Any, *, excludes_cached_input: bool = False) -> TokenUsage:
    """Build a ``TokenUsage`` from any usage payload.

    Cached reads are subtracted from the raw input count unless the provider
    already reports input without them.
    """
    if raw is None or isinstance(raw, (bool, int, float, str, bytes, list, tuple)):
        if raw is not None:
            logger.debug("usage payload has unexpected shape %s; treating as empty", type(raw).__name__)
        return TokenUsage()

    try:
        cache_read_raw = _pick(raw, _USAGE_KEYS["cache_read"])
        if cache_read_raw is None:
            details = _pick(raw, ("prompt_tokens_details", "inputTokenDetails", "input_tokens_details"))
            cache_read_raw = _pick(details, ("cached_tokens", "cacheReadTokens", "cache_read"))
        reasoning_raw = _pick(raw, _USAGE_KEYS["reasoning"])
        if reasoning_raw is None:
            details = _pick(raw, ("completion_tokens_details", "outputTokenDetails", "output_tokens_details"))
            reasoning_raw = _pick(details, ("reasoning_tokens", "reasoningTokens", "reasoning"))

        raw_input = safe_token_value(_pick(raw, _USAGE_KEYS["input"]))
        output = safe_token_value(_pick(raw, _USAGE_KEYS["output"]))
        reasoning = safe_token_value(reasoning_raw)
        cache_read = safe_token_value(cache_read_raw)
        cache_write = safe_token_value(_pick(raw, _USAGE_KEYS["cache_write"]))
    except Exception:  # arbitrary objects may raise from attribute access
        logger.debug("usage payload could not be read; treating as empty", exc_info=True)
        return TokenUsage()

    adjusted_input = raw_input if excludes_cached_input else max(0, raw_input - cache_read)
    return TokenUsage(
        input=adjusted_input,
        output=output,
        reasoning=reasoning,
        cache_read=cache_read,
        cache_write=cache_write,
    )


def _reason_text(raw: Any, depth: int = 0) -> Optional[str]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, FinishReason):
        return raw.value
    if isinstance(raw, str):
        return raw
    if depth >= _MAX_DEPTH or isinstance(raw, (int, float, list, tuple)):
        return None
    for key in _NESTED_REASON_KEYS:
        nested = _get_attr(raw, key, None)
        if nested is not None:
            text = _reason_text(nested, depth + 1)
            if text is not None:
                return text
    return None


def normalize_finish_reason(raw: Any) -> FinishReason:
    """Map any finish-reason shape onto ``FinishReason``; unrecognized is ``UNKNOWN``."""
    try:
        text = _reason_text(raw)
    except Exception:  # arbitrary objects may raise from attribute access
        logger.debug("finish reason could not be read; treating as unknown", exc_info=True)
        return FinishReason.UNKNOWN
    if not text:
        return FinishReason.UNKNOWN
    return _FINISH_REASON_MAP.get(text.strip().lower(), FinishReason.UNKNOWN)


def raw_reason_string(raw: Any) -> Optional[str]:
    """Stringified raw finish reason for diagnostics only."""
    if raw is None:
        return None
    try:
        text = _reason_text(raw)
    except Exception:
        text = None
    if text is not None:
        return text
    try:
        return repr(raw)[:200]
    except Exception:
        return type(raw).__name__


def _decimal(value: Any) -> Decimal:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return number if number.is_finite() else Decimal(0)


def compute_cost(usage: TokenUsage, cost: Optional[ModelCost]) -> float:
    """USD cost of one step from per-million-token prices; non-finite results are 0."""
    if cost is None:
        return 0.0
    tier = cost
    if cost.context_over_200k is not None and usage.input + usage.cache_read > 200_000:
        tier = cost.context_over_200k
    million = Decimal(1_000_000)
    total = (
        _decimal(usage.input) * _decimal(tier.input)
        + _decimal(usage.output) * _decimal(tier.output)
        + _decimal(usage.cache_read) * _decimal(tier.cache_read)
        + _decimal(usage.cache_write) * _decimal(tier.cache_write)
        # reasoning tokens are billed at the output rate
        + _decimal(usage.reasoning) * _decimal(tier.output)
    ) / million
    result = float(total)
    return result if math.isfinite(result) and result >= 0 else 0.0
