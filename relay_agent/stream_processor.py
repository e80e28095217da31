"""
Streaming step processor.

Drives one provider call: opens the adapter stream, enforces the chunk and step
timers, forwards deltas to the event emitter and folds the terminal
``step-finish`` payload into a canonical ``StepOutcome``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from .auth import Credentials, CredentialStore
from .config import StreamConfig
from .errors import (
    ErrorKind,
    FatalProviderError,
    ProviderError,
    StepAnomalyError,
    StepTimeoutError,
    StreamStalledError,
)
from .events import EventEmitter
from .provider_catalog import ProviderCatalog, ProviderInfo
from .provider_ir import StreamEvent
from .provider_normalizer import (
    compute_cost,
    normalize_finish_reason,
    normalize_usage,
    raw_reason_string,
)
from .provider_routing import ModelDescriptor
from .provider_runtime import ProviderAdapter, ProviderClientFactory, StreamOptions
from .state.session_state import FinishReason, Step, TokenUsage, ToolCall, ToolResult

logger = logging.getLogger(__name__)

_RAW_LIMIT = 500


class StepState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    FINISHED = "finished"
    STALLED = "stalled"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    finish_reason: FinishReason
    usage: TokenUsage
    provider_id: str
    requested_model_id: str
    responded_model_id: Optional[str]
    text: str = ""
    reasoning: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_results: Tuple[ToolResult, ...] = ()
    cost: float = 0.0
    elapsed: float = 0.0
    first_chunk_latency: Optional[float] = None
    raw_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_step(self, step_id: str, tool_results: Tuple[ToolResult, ...] = ()) -> Step:
        return Step(
            id=step_id,
            finish_reason=self.finish_reason,
            usage=self.usage,
            provider_id=self.provider_id,
            requested_model_id=self.requested_model_id,
            responded_model_id=self.responded_model_id,
            text=self.text,
            tool_calls=self.tool_calls,
            tool_results=self.tool_results + tuple(tool_results),
            cost=self.cost,
            raw_metadata=dict(self.raw_metadata),
        )


def _raw_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        text = repr(value)
    except Exception:  # arbitrary provider objects
        text = type(value).__name__
    return text[:_RAW_LIMIT]


class StreamingStepProcessor:
    """Runs exactly one step against one candidate."""

    def __init__(
        self,
        *,
        catalog: ProviderCatalog,
        clients: ProviderClientFactory,
        credentials: CredentialStore,
        stream_config: Optional[StreamConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.clients = clients
        self.credentials = credentials
        self.config = stream_config or StreamConfig()
        self._clock = clock
        self.state = StepState.NOT_STARTED

    def _provider(self, candidate: ModelDescriptor) -> ProviderInfo:
        provider = self.catalog.get(candidate.provider_id)
        if provider is None:
            raise FatalProviderError(
                f"Provider '{candidate.provider_id}' is not configured",
                kind=ErrorKind.PROVIDER_INIT,
                provider_id=candidate.provider_id,
                model_id=candidate.model_id,
            )
        return provider

    async def run_step(
        self,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: Optional[StreamOptions] = None,
        *,
        emitter: Optional[EventEmitter] = None,
    ) -> StepOutcome:
        """Execute one step; raises ``RetryableProviderError`` or ``FatalProviderError``."""
        options = options or StreamOptions()
        provider = self._provider(candidate)
        adapter = self.clients.adapter_for(provider)
        credentials = self.credentials.get(provider.id, required=adapter.requires_api_key)

        refreshed = False
        while True:
            try:
                return await self._attempt(adapter, provider, credentials, candidate, conversation, options, emitter)
            except ProviderError as exc:
                if exc.kind != ErrorKind.AUTH or refreshed or not self.credentials.can_refresh(provider.id):
                    raise
                logger.info("auth failure on %s; refreshing credentials and re-attempting once", candidate.route)
                refreshed = True
                self.clients.invalidate(provider.id)
                credentials = await self.credentials.refresh(provider.id)

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        provider: ProviderInfo,
        credentials: Credentials,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
        emitter: Optional[EventEmitter],
    ) -> StepOutcome:
        self.state = StepState.NOT_STARTED
        client = await self.clients.get_client(provider, credentials)

        try:
            stream = adapter.open_stream(client, candidate, conversation, options)
        except ProviderError:
            self.state = StepState.FAILED
            raise
        except Exception as exc:
            self.state = StepState.FAILED
            raise adapter.classify_error(exc, candidate) from exc

        self.state = StepState.STREAMING
        chunk_s = self.config.chunk_timeout_ms / 1000.0
        step_s = self.config.step_timeout_ms / 1000.0
        started = self._clock()
        first_chunk: Optional[float] = None

        text_parts: List[str] = []
        reasoning_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        tool_results: List[ToolResult] = []
        finish: Optional[StreamEvent] = None

        try:
            while True:
                remaining = step_s - (self._clock() - started)
                if remaining <= 0:
                    raise self._step_timeout(candidate, step_s)
                stalled_bound = chunk_s <= remaining
                try:
                    event = await asyncio.wait_for(stream.__anext__(), timeout=chunk_s if stalled_bound else remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    if stalled_bound:
                        self.state = StepState.STALLED
                        raise StreamStalledError(
                            f"No stream data from {candidate.route} for {self.config.chunk_timeout_ms}ms",
                            provider_id=candidate.provider_id,
                            model_id=candidate.model_id,
                            details={"chunk_timeout_ms": self.config.chunk_timeout_ms},
                        ) from None
                    raise self._step_timeout(candidate, step_s) from None

                if first_chunk is None:
                    first_chunk = self._clock() - started
                finish = self._handle_event(
                    event,
                    adapter,
                    candidate,
                    emitter,
                    finish,
                    text_parts,
                    reasoning_parts,
                    tool_calls,
                    tool_results,
                )
        except ProviderError:
            if self.state != StepState.STALLED:
                self.state = StepState.FAILED
            raise
        except asyncio.CancelledError:
            self.state = StepState.FAILED
            raise
        except Exception as exc:
            self.state = StepState.FAILED
            raise adapter.classify_error(exc, candidate) from exc
        finally:
            await self._close(stream)

        return self._finish(
            provider,
            candidate,
            finish,
            text="".join(text_parts),
            reasoning="".join(reasoning_parts),
            tool_calls=tuple(tool_calls),
            tool_results=tuple(tool_results),
            elapsed=self._clock() - started,
            first_chunk=first_chunk,
        )

    def _step_timeout(self, candidate: ModelDescriptor, step_s: float) -> StepTimeoutError:
        self.state = StepState.FAILED
        return StepTimeoutError(
            f"Step on {candidate.route} exceeded {self.config.step_timeout_ms}ms",
            provider_id=candidate.provider_id,
            model_id=candidate.model_id,
            details={"step_timeout_ms": self.config.step_timeout_ms},
        )

    async def _close(self, stream: AsyncIterator[StreamEvent]) -> None:
        aclose = getattr(stream, "aclose", None)
        if not callable(aclose):
            return
        try:
            await aclose()
        except (RuntimeError, ProviderError, OSError):
            logger.debug("error while closing provider stream", exc_info=True)

    def _handle_event(
        self,
        event: StreamEvent,
        adapter: ProviderAdapter,
        candidate: ModelDescriptor,
        emitter: Optional[EventEmitter],
        finish: Optional[StreamEvent],
        text_parts: List[str],
        reasoning_parts: List[str],
        tool_calls: List[ToolCall],
        tool_results: List[ToolResult],
    ) -> Optional[StreamEvent]:
        kind = event.type
        if kind == "heartbeat":
            return finish
        if kind == "text-delta":
            if event.text:
                text_parts.append(event.text)
                if emitter is not None:
                    emitter.emit("text-delta", text=event.text)
        elif kind == "reasoning-delta":
            if event.text:
                reasoning_parts.append(event.text)
                if emitter is not None:
                    emitter.emit("reasoning-delta", text=event.text)
        elif kind == "tool-call":
            call = ToolCall(
                id=str(event.tool_call_id or f"call_{len(tool_calls)}"),
                name=str(event.tool_name or ""),
                arguments=event.arguments,
                provider_executed=event.provider_executed,
            )
            tool_calls.append(call)
            if emitter is not None:
                emitter.emit("tool-call", tool_call=call.to_dict())
        elif kind == "tool-result":
            result = ToolResult(
                tool_call_id=str(event.tool_call_id or ""),
                output=event.output if isinstance(event.output, str) else str(event.output),
                is_error=event.is_error,
                name=event.tool_name,
            )
            tool_results.append(result)
            if emitter is not None:
                emitter.emit("tool-result", tool_result=result.to_dict())
        elif kind == "error":
            error = event.error or RuntimeError("provider stream reported an error")
            raise adapter.classify_error(error, candidate)
        elif kind == "step-finish":
            logger.debug(
                "raw step-finish from %s: finish_reason=%r usage=%r",
                candidate.route,
                event.finish_reason,
                event.usage,
            )
            return event
        else:
            logger.debug("ignoring unknown stream event type %r", kind)
        return finish

    def _finish(
        self,
        provider: ProviderInfo,
        candidate: ModelDescriptor,
        finish: Optional[StreamEvent],
        *,
        text: str,
        reasoning: str,
        tool_calls: Tuple[ToolCall, ...],
        tool_results: Tuple[ToolResult, ...],
        elapsed: float,
        first_chunk: Optional[float],
    ) -> StepOutcome:
        if finish is None:
            logger.info("stream from %s ended without step-finish", candidate.route)
            raw_reason, raw_usage, responded, provider_meta = None, None, None, {}
        else:
            raw_reason, raw_usage = finish.finish_reason, finish.usage
            responded = finish.model
            provider_meta = dict(finish.metadata or {})

        excludes_cached = provider.excludes_cached_input or bool(
            provider_meta.get("anthropic") or provider_meta.get("bedrock")
        )
        finish_reason = normalize_finish_reason(raw_reason)
        usage = normalize_usage(raw_usage, excludes_cached_input=excludes_cached)
        raw_metadata: Dict[str, Any] = {
            "raw_finish_reason": raw_reason_string(raw_reason),
            "raw_usage": _raw_string(raw_usage),
            "step_finish_received": finish is not None,
        }
        if reasoning:
            raw_metadata["reasoning"] = reasoning

        if finish_reason == FinishReason.UNKNOWN and usage.is_empty():
            self.state = StepState.FAILED
            raise StepAnomalyError(
                f"{candidate.route} returned an empty response "
                f"(finish reason unknown, zero usage; responded model {responded or 'n/a'})",
                provider_id=candidate.provider_id,
                model_id=candidate.model_id,
                responded_model_id=responded,
                details=raw_metadata,
            )

        model_info = self.catalog.find_model(candidate.provider_id, candidate.model_id)
        cost = compute_cost(usage, model_info.cost if model_info is not None else None)
        self.state = StepState.FINISHED
        return StepOutcome(
            finish_reason=finish_reason,
            usage=usage,
            provider_id=candidate.provider_id,
            requested_model_id=candidate.model_id,
            responded_model_id=responded,
            text=text,
            reasoning=reasoning,
            tool_calls=tool_calls,
            tool_results=tool_results,
            cost=cost,
            elapsed=elapsed,
            first_chunk_latency=first_chunk,
            raw_metadata=raw_metadata,
        )
