"""
Batch runner: independent sessions in parallel, in-process or on Ray actors.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import ray
import yaml

from .agent import RelayAgent
from .config import AgentConfig
from .errors import ConfigValidationError

logger = logging.getLogger(__name__)


@dataclass
class BatchRequest:
    prompt: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchRequest":
        if not isinstance(data, dict) or not data.get("prompt"):
            raise ConfigValidationError("each batch request needs a non-empty 'prompt'")
        return cls(
            prompt=str(data["prompt"]),
            model=data.get("model"),
            system_prompt=data.get("system_prompt"),
            session_id=data.get("session_id"),
            metadata=dict(data.get("metadata") or {}),
        )


def load_requests(path: Union[str, Path]) -> List[BatchRequest]:
    """Read a YAML or JSON list of requests (YAML is a JSON superset)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigValidationError(f"could not read batch file {path}: {exc}") from exc
    if isinstance(doc, dict):
        doc = doc.get("requests")
    if not isinstance(doc, list):
        raise ConfigValidationError("batch file must contain a list of requests")
    return [BatchRequest.from_dict(item) for item in doc]


async def _run_one(agent: RelayAgent, request: BatchRequest) -> Dict[str, Any]:
    result = await agent.run_session(
        request.prompt,
        model=request.model,
        system_prompt=request.system_prompt,
        session_id=request.session_id,
    )
    payload = result.to_dict()
    payload["request"] = {"prompt": request.prompt, "model": request.model, "metadata": request.metadata}
    payload["text"] = result.text
    return payload


class SessionWorker:
    """Runs sessions for one batch slot; wrapped with ``ray.remote`` for actor mode."""

    def __init__(self, config: AgentConfig) -> None:
        self.agent = RelayAgent(config)

    def run(self, request: BatchRequest) -> Dict[str, Any]:
        return asyncio.run(_run_one(self.agent, request))


class BatchRunner:
    """Runs independent sessions concurrently; sessions share no mutable state."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        use_ray: bool = False,
        agent_factory: Optional[Callable[[AgentConfig], RelayAgent]] = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.use_ray = use_ray
        self._agent_factory = agent_factory or RelayAgent

    async def run_local(self, requests: List[BatchRequest]) -> List[Dict[str, Any]]:
        agent = self._agent_factory(self.config)
        return list(await asyncio.gather(*(_run_one(agent, request) for request in requests)))

    def _ensure_ray(self) -> bool:
        try:
            if not ray.is_initialized():
                ray.init(address="local", include_dashboard=False)
            return True
        except (RuntimeError, ConnectionError, ValueError) as exc:
            logger.warning("ray unavailable (%s); running batch in-process", exc)
            return False

    def run_ray(self, requests: List[BatchRequest]) -> List[Dict[str, Any]]:
        worker_cls = ray.remote(SessionWorker)
        actors = [worker_cls.remote(self.config) for _ in requests]
        refs = [actor.run.remote(request) for actor, request in zip(actors, requests)]
        try:
            return list(ray.get(refs))
        finally:
            for actor in actors:
                ray.kill(actor)

    def run(self, requests: List[BatchRequest]) -> List[Dict[str, Any]]:
        if not requests:
            return []
        if self.use_ray and self._ensure_ray():
            logger.info("running %d sessions on ray actors", len(requests))
            return self.run_ray(requests)
        logger.info("running %d sessions in-process", len(requests))
        return asyncio.run(self.run_local(requests))
