"""
Relay agent facade.

Wires the resolver, provider runtimes, retry policy and session loop from one
``AgentConfig`` and exposes a single ``run_session`` entry point.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .auth import CredentialStore, TokenRefresher
from .cancellation import CancellationToken
from .config import AgentConfig, load_config
from .error_handling import ErrorHandler
from .events import EventEmitter, EventSink
from .logging_v2.run_logger import RunLogger
from .monitoring.telemetry import TelemetryLogger
from .package_installer import PackageInstaller
from .provider_catalog import ProviderCatalog
from .provider_health import RouteCircuitBreaker
from .provider_metrics import ProviderMetricsCollector
from .provider_routing import ModelResolver
from .provider_runtime import ProviderClientFactory, ProviderRuntimeRegistry, StreamOptions
from .retry_policy import RetryPolicyEngine
from .session_loop import SessionLoopController, SessionResult
from .state.session_state import Session
from .stream_processor import StreamingStepProcessor
from .tools import ToolExecutor

logger = logging.getLogger(__name__)


class RelayAgent:
    """Shared provider state plus a factory for per-session loops."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        catalog: Optional[ProviderCatalog] = None,
        registry: Optional[ProviderRuntimeRegistry] = None,
        installer: Optional[PackageInstaller] = None,
        tool_executor: Optional[ToolExecutor] = None,
        refreshers: Optional[Dict[str, TokenRefresher]] = None,
        environ: Optional[Mapping[str, str]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        rng: Optional[random.Random] = None,
        event_sinks: Optional[List[EventSink]] = None,
    ) -> None:
        self.config = config or AgentConfig()
        base_catalog = catalog or ProviderCatalog.default()
        self.catalog = base_catalog.apply_overrides(self.config.providers)
        self.resolver = ModelResolver(
            self.catalog,
            provider_preference=self.config.routing.provider_preference,
            default_model=self.config.model,
        )
        self.credentials = CredentialStore(self.catalog, environ=environ, refreshers=refreshers)
        self.clients = ProviderClientFactory(registry=registry, installer=installer)
        self.retry_policy = RetryPolicyEngine(self.config.retry, rng=rng)
        routing = self.config.routing
        self.circuits = RouteCircuitBreaker(
            threshold=routing.circuit_failure_threshold,
            window_s=routing.circuit_window_ms / 1000.0,
            cooldown_s=routing.circuit_cooldown_ms / 1000.0,
        )
        self.tool_executor = tool_executor
        self._sleep = sleep or asyncio.sleep
        self._sinks: List[EventSink] = list(event_sinks or [])
        self.telemetry = TelemetryLogger(self.config.logging.telemetry_path)
        if self.telemetry.enabled:
            self._sinks.append(self.telemetry.log)

    def default_model(self) -> str:
        return self.resolver.default_model(dry_run=self.config.dry_run)

    def build_controller(self, run_logger: Optional[RunLogger] = None) -> SessionLoopController:
        processor = StreamingStepProcessor(
            catalog=self.catalog,
            clients=self.clients,
            credentials=self.credentials,
            stream_config=self.config.stream,
        )
        return SessionLoopController(
            resolver=self.resolver,
            processor=processor,
            retry_policy=self.retry_policy,
            circuits=self.circuits,
            tool_executor=self.tool_executor,
            error_handler=ErrorHandler(),
            run_logger=run_logger,
            max_steps=self.config.max_steps,
            allow_fallback=self.config.routing.allow_fallback,
            stream_options=StreamOptions(),
            sleep=self._sleep,
        )

    async def run_session(
        self,
        prompt: Optional[str],
        *,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        session_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        sinks: Optional[List[EventSink]] = None,
    ) -> SessionResult:
        session = Session(
            session_id=session_id,
            system_prompt=system_prompt if system_prompt is not None else self.config.system_prompt,
            history=history,
        )
        run_logger = RunLogger(self.config.logging) if self.config.logging.enabled else None
        emitter = EventEmitter(session.id, self._sinks + list(sinks or []))
        if run_logger is not None:
            emitter.add_sink(run_logger.log_event)

        if self.config.dry_run:
            chosen = self.default_model()
        else:
            chosen = model or self.default_model()
        logger.info("session %s starting with model %s", session.id, chosen)
        controller = self.build_controller(run_logger)
        return await controller.run(
            session,
            prompt,
            model=chosen,
            emitter=emitter,
            token=token,
            metrics=ProviderMetricsCollector(),
        )

    def run(self, prompt: str, **kwargs: Any) -> SessionResult:
        """Blocking convenience wrapper around ``run_session``."""
        return asyncio.run(self.run_session(prompt, **kwargs))

    def close(self) -> None:
        self.telemetry.close()


def create_agent(config_path: Optional[str] = None, **kwargs: Any) -> RelayAgent:
    """Factory function to create a relay agent from a config file."""
    return RelayAgent(load_config(config_path), **kwargs)
