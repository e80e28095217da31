"""
Session loop controller.

Runs steps one after another until the provider signals a terminal finish
reason, consulting the retry policy on transient failures and moving implicit
selections to a sibling provider after hard ones.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .cancellation import CancellationToken
from .error_handling import ErrorHandler
from .errors import (
    AgentError,
    ErrorKind,
    ProviderError,
    SessionCancelled,
    SessionError,
    StepAnomalyError,
)
from .events import EventEmitter
from .logging_v2.run_logger import RunLogger
from .provider_health import RouteCircuitBreaker
from .provider_metrics import ProviderMetricsCollector
from .provider_routing import ModelDescriptor, ModelResolver
from .provider_runtime import StreamOptions
from .retry_policy import RetryPolicyEngine
from .state.session_state import (
    TERMINAL_FINISH_REASONS,
    FinishReason,
    Session,
    SessionStatus,
    Step,
    TokenUsage,
    ToolCall,
    ToolResult,
    new_id,
)
from .stream_processor import StepOutcome, StreamingStepProcessor
from .tools import NullToolExecutor, ToolExecutor

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class SessionResult:
    session_id: str
    status: SessionStatus
    steps: List[Step] = field(default_factory=list)
    error: Optional[AgentError] = None
    error_event: Optional[Dict[str, Any]] = None
    model: Optional[ModelDescriptor] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    @property
    def text(self) -> str:
        return self.steps[-1].text if self.steps else ""

    @property
    def usage(self) -> TokenUsage:
        totals = [0, 0, 0, 0, 0]
        for step in self.steps:
            u = step.usage
            for idx, value in enumerate((u.input, u.output, u.reasoning, u.cache_read, u.cache_write)):
                totals[idx] += value
        return TokenUsage(*totals)

    @property
    def cost(self) -> float:
        return sum(step.cost for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "steps": [step.to_dict() for step in self.steps],
            "error": self.error_event,
            "model": self.model.to_dict() if self.model is not None else None,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
            "metrics": self.metrics,
        }


@dataclass
class _Routing:
    """Mutable per-session routing cursor."""

    current: ModelDescriptor
    remaining: List[ModelDescriptor]
    tried: Set[str] = field(default_factory=set)


class SessionLoopController:
    """Drives a session to completion through resolver, processor and retry policy."""

    def __init__(
        self,
        *,
        resolver: ModelResolver,
        processor: StreamingStepProcessor,
        retry_policy: RetryPolicyEngine,
        circuits: Optional[RouteCircuitBreaker] = None,
        tool_executor: Optional[ToolExecutor] = None,
        error_handler: Optional[ErrorHandler] = None,
        run_logger: Optional[RunLogger] = None,
        max_steps: int = 50,
        allow_fallback: bool = True,
        stream_options: Optional[StreamOptions] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.processor = processor
        self.retry_policy = retry_policy
        self.circuits = circuits or RouteCircuitBreaker()
        self.tool_executor = tool_executor or NullToolExecutor()
        self.error_handler = error_handler or ErrorHandler()
        self.run_logger = run_logger
        self.max_steps = max_steps
        self.allow_fallback = allow_fallback
        self.stream_options = stream_options
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        session: Session,
        prompt: Optional[str],
        *,
        model: str,
        emitter: Optional[EventEmitter] = None,
        token: Optional[CancellationToken] = None,
        metrics: Optional[ProviderMetricsCollector] = None,
    ) -> SessionResult:
        emitter = emitter or EventEmitter(session.id)
        token = token or CancellationToken()
        metrics = metrics or ProviderMetricsCollector()
        result = SessionResult(session_id=session.id, status=SessionStatus.BUSY)

        if self.run_logger is not None:
            self.run_logger.start_run(session.id)
        if prompt:
            session.add_user_message(prompt)
        session.status = SessionStatus.BUSY
        emitter.emit("session-start", model=model)

        try:
            routing = self._start_routing(model, metrics)
            session.current_model = routing.current
            result.model = routing.current
            await self._loop(session, routing, emitter, token, metrics, result)
            session.status = SessionStatus.COMPLETED
        except SessionCancelled as exc:
            logger.info("session %s cancelled: %s", session.id, exc.message)
            session.status = SessionStatus.CANCELLED
            result.error = exc
        except AgentError as exc:
            session.status = SessionStatus.FAILED
            result.error = exc
            payload = self.error_handler.handle_provider_error(exc)
            result.error_event = emitter.emit("error", **payload)
            if self.run_logger is not None:
                self.run_logger.write_error(f"session_{exc.kind}", payload)
            logger.info("session %s failed: [%s] %s", session.id, exc.kind, exc.message)
        finally:
            self.retry_policy.clear(session.id)

        result.status = session.status
        result.model = session.current_model or result.model
        result.steps = session.steps
        result.metrics = metrics.snapshot()
        session.set_provider_metadata("metrics", result.metrics)
        emitter.emit(
            "session-finish",
            status=result.status.value,
            steps=len(result.steps),
            usage=result.usage.to_dict(),
            cost=result.cost,
        )
        if self.run_logger is not None:
            self.run_logger.write_meta(session.create_snapshot())
        return result

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _start_routing(self, model: str, metrics: ProviderMetricsCollector) -> _Routing:
        candidates = list(self.resolver.resolve(model))
        available = [c for c in candidates if not self.circuits.is_open(c.route)]
        for skipped in candidates:
            if skipped not in available:
                metrics.add_circuit_skip(skipped.route)
        if not available:
            # every route is cooling down; try the preferred one anyway
            available = candidates
        current = available[0]
        remaining = [c for c in candidates if c != current]
        return _Routing(current=current, remaining=remaining, tried={current.route})

    def _select_fallback(self, routing: _Routing, metrics: ProviderMetricsCollector) -> Optional[ModelDescriptor]:
        current = routing.current
        pool: List[ModelDescriptor] = [c for c in routing.remaining if c.route not in routing.tried]
        alternatives = self.resolver.get_alternative_providers(
            current.model_id, current.provider_id, current.was_explicit
        )
        known = {c.provider_id for c in pool}
        for provider_id in sorted(alternatives, key=self.resolver.preference_rank):
            if provider_id in known:
                continue
            info = self.resolver.catalog.find_model(provider_id, current.model_id)
            if info is None:
                continue
            pool.append(ModelDescriptor(provider_id, info.id, info.api_id, was_explicit=False))

        for candidate in pool:
            if candidate.route in routing.tried:
                continue
            if self.circuits.is_open(candidate.route):
                metrics.add_circuit_skip(candidate.route)
                routing.tried.add(candidate.route)
                continue
            return candidate
        return None

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        session: Session,
        routing: _Routing,
        emitter: EventEmitter,
        token: CancellationToken,
        metrics: ProviderMetricsCollector,
        result: SessionResult,
    ) -> None:
        message = session.begin_assistant_message()
        step_index = 0
        while True:
            token.raise_if_shutdown()
            if step_index >= self.max_steps:
                raise SessionError(
                    f"Session exceeded max_steps={self.max_steps}",
                    kind=ErrorKind.MAX_STEPS_EXCEEDED,
                    details={"max_steps": self.max_steps},
                )
            step_index += 1
            step_id = new_id("step")
            emitter.emit(
                "step-start",
                step_id=step_id,
                step_index=step_index,
                provider_id=routing.current.provider_id,
                model_id=routing.current.model_id,
            )

            outcome = await self._run_step_with_retry(session, routing, emitter, token, metrics)
            finish_reason = outcome.finish_reason
            continue_with_tools = finish_reason == FinishReason.TOOL_CALLS
            if finish_reason == FinishReason.UNKNOWN and outcome.tool_calls:
                logger.info(
                    "step %s ended with unknown finish reason but %d tool calls; continuing",
                    step_id,
                    len(outcome.tool_calls),
                )
                continue_with_tools = True

            self._emit_step_finish(emitter, step_id, outcome)

            executed: Tuple[ToolResult, ...] = ()
            if continue_with_tools:
                executed = await self._execute_tools(outcome, emitter, token)
            step = outcome.to_step(step_id, executed)
            message.add_step(step)
            if self.run_logger is not None:
                self.run_logger.write_step(step_index, step.to_dict())

            if finish_reason in TERMINAL_FINISH_REASONS:
                return
            if continue_with_tools:
                continue
            raise SessionError(
                f"{routing.current.route} ended a step without a recognizable finish reason "
                f"(responded model {outcome.responded_model_id or 'n/a'})",
                kind=ErrorKind.UNKNOWN_FINISH_REASON,
                details={
                    "provider_id": outcome.provider_id,
                    "requested_model_id": outcome.requested_model_id,
                    "responded_model_id": outcome.responded_model_id,
                    "raw_finish_reason": outcome.raw_metadata.get("raw_finish_reason"),
                    "usage": outcome.usage.to_dict(),
                },
            )

    def _emit_step_finish(self, emitter: EventEmitter, step_id: str, outcome: StepOutcome) -> None:
        emitter.emit(
            "step-finish",
            step_id=step_id,
            finish_reason=outcome.finish_reason.value,
            usage=outcome.usage.to_dict(),
            cost=outcome.cost,
            provider_id=outcome.provider_id,
            requested_model_id=outcome.requested_model_id,
            responded_model_id=outcome.responded_model_id,
        )

    async def _run_step_with_retry(
        self,
        session: Session,
        routing: _Routing,
        emitter: EventEmitter,
        token: CancellationToken,
        metrics: ProviderMetricsCollector,
    ) -> StepOutcome:
        attempt = 0
        while True:
            # a shutdown request lets an in-flight call finish but never starts another
            token.raise_if_shutdown()
            attempt += 1
            candidate = routing.current
            started = self._clock()
            try:
                outcome = await token.run(
                    self.processor.run_step(
                        candidate,
                        session.conversation(),
                        self._options(),
                        emitter=emitter,
                    )
                )
            except ProviderError as exc:
                elapsed = self._clock() - started
                metrics.add_call(candidate.route, elapsed=elapsed, outcome="error", error_kind=exc.kind)
                if isinstance(exc, StepAnomalyError):
                    metrics.add_anomaly(
                        route=candidate.route,
                        requested_model_id=candidate.model_id,
                        responded_model_id=exc.responded_model_id,
                    )

                if exc.retryable:
                    decision = self.retry_policy.decide(exc, attempt, session.id)
                    if not decision.should_retry:
                        raise SessionError(
                            f"Giving up on {candidate.route} after {attempt} attempt(s): {exc.message}",
                            kind=decision.reason or ErrorKind.RETRY_EXHAUSTED,
                            cause=exc,
                            details=decision.to_dict(),
                        ) from exc
                    token.raise_if_shutdown()
                    emitter.emit(
                        "retry",
                        attempt=attempt,
                        delay_ms=decision.delay_ms,
                        error_class=decision.error_class,
                        hint_ms=decision.hint_ms,
                        provider_id=candidate.provider_id,
                        model_id=candidate.model_id,
                        message=exc.message,
                    )
                    metrics.add_retry(
                        route=candidate.route,
                        error_class=decision.error_class or exc.kind,
                        delay_ms=decision.delay_ms,
                        attempt=attempt,
                    )
                    session.status = SessionStatus.RETRY
                    await token.run(self._sleep(decision.delay_ms / 1000.0), include_shutdown=True)
                    self.retry_policy.record_wait(session.id, decision.delay_ms)
                    session.status = SessionStatus.BUSY
                    continue

                self.retry_policy.clear(session.id)
                if exc.is_hard_provider_failure:
                    self.circuits.record_hard_failure(candidate.route, exc.kind)
                    if self.allow_fallback and not candidate.was_explicit:
                        fallback = self._select_fallback(routing, metrics)
                        if fallback is not None:
                            logger.info(
                                "falling back from %s to %s after %s", candidate.route, fallback.route, exc.kind
                            )
                            emitter.emit(
                                "fallback",
                                from_route=candidate.route,
                                to_route=fallback.route,
                                reason=exc.kind,
                                message=exc.message,
                            )
                            metrics.add_fallback(primary=candidate.route, fallback=fallback.route, reason=exc.kind)
                            routing.tried.add(fallback.route)
                            routing.current = fallback
                            session.current_model = fallback
                            attempt = 0
                            continue
                raise SessionError(exc.message, kind=exc.kind, cause=exc) from exc

            metrics.add_call(
                candidate.route,
                elapsed=outcome.elapsed,
                outcome="success",
                first_chunk_latency=outcome.first_chunk_latency,
            )
            self.circuits.record_success(candidate.route)
            self.retry_policy.clear(session.id)
            return outcome

    def _options(self) -> StreamOptions:
        if self.stream_options is not None:
            options = self.stream_options
        else:
            options = StreamOptions()
        if not options.tools:
            specs = self.tool_executor.specs()
            if specs:
                options = StreamOptions(
                    tools=list(specs),
                    max_output_tokens=options.max_output_tokens,
                    temperature=options.temperature,
                    extra=dict(options.extra),
                )
        return options

    async def _execute_tools(
        self,
        outcome: StepOutcome,
        emitter: EventEmitter,
        token: CancellationToken,
    ) -> Tuple[ToolResult, ...]:
        done = {result.tool_call_id for result in outcome.tool_results}
        pending: List[ToolCall] = [
            call for call in outcome.tool_calls if not call.provider_executed and call.id not in done
        ]
        results: List[ToolResult] = []
        for call in pending:
            try:
                tool_result = await token.run(self.tool_executor.execute(call))
            except SessionCancelled:
                raise
            except Exception as exc:  # executor bugs surface to the model, not the session
                payload = self.error_handler.handle_execution_error(exc, call.name, call.arguments)
                logger.warning("tool executor raised for %s: %s", call.name, exc)
                tool_result = ToolResult(
                    tool_call_id=call.id,
                    name=call.name,
                    output=f"Error: {payload['error']}",
                    is_error=True,
                )
            results.append(tool_result)
            emitter.emit("tool-result", tool_result=tool_result.to_dict())
        return tuple(results)


__all__ = ["SessionLoopController", "SessionResult"]
