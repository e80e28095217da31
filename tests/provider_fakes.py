"""Scripted provider runtime shared by the session and processor tests."""

import asyncio
import random
from types import SimpleNamespace
from typing import Dict, List

from relay_agent.agent import RelayAgent
from relay_agent.config import AgentConfig
from relay_agent.provider_ir import StreamEvent
from relay_agent.provider_runtime import ProviderAdapter, ProviderRuntimeRegistry


class FakeStatusError(Exception):
    """Looks enough like an SDK ``APIStatusError`` for the classifier."""

    def __init__(self, status_code, message="provider error", headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = SimpleNamespace(headers=dict(headers or {}))


class Pause:
    """Script item: wait ``seconds`` before yielding the next event."""

    def __init__(self, seconds):
        self.seconds = seconds


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def finish(reason="stop", usage=None, model=None):
    if usage is None:
        usage = {"input_tokens": 10, "output_tokens": 5}
    return StreamEvent.step_finish(reason, usage, model=model)


def scripted_registry(plan: Dict[str, List[list]]):
    """Registry whose ``scripted`` runtime replays ``plan[provider_id]`` one attempt per call.

    The last attempt is repeated once the list is exhausted. Returns the
    registry and the list of routes that were opened, in order.
    """
    opened: List[str] = []
    closed: List[str] = []

    class ScriptedAdapter(ProviderAdapter):
        runtime_id = "scripted"
        requires_api_key = False

        def create_client(self, credentials, sdk=None):
            return SimpleNamespace(provider_id=self.provider.id, api_key=credentials.api_key)

        async def open_stream(self, client, candidate, conversation, options):
            opened.append(candidate.route)
            attempts = plan[self.provider.id]
            script = attempts.pop(0) if len(attempts) > 1 else attempts[0]
            try:
                for item in script:
                    if isinstance(item, BaseException):
                        raise item
                    if isinstance(item, Pause):
                        await asyncio.sleep(item.seconds)
                        continue
                    yield item
            finally:
                closed.append(candidate.route)

    registry = ProviderRuntimeRegistry()
    registry.register_runtime("scripted", ScriptedAdapter)
    return registry, SimpleNamespace(opened=opened, closed=closed)


def scripted_agent(plan, *, config=None, providers=None, sleep=None, seed=7, **kwargs):
    """RelayAgent over the built-in catalog with the named providers switched to the scripted runtime."""
    registry, trace = scripted_registry(plan)
    config = config or AgentConfig()
    overrides = {pid: {"runtime": "scripted"} for pid in plan}
    overrides.update(providers or {})
    config.providers = overrides
    agent = RelayAgent(
        config,
        registry=registry,
        environ={},
        sleep=sleep or RecordingSleep(),
        rng=random.Random(seed),
        **kwargs,
    )
    return agent, trace
