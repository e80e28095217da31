"""
Model resolution for the relay agent.

Supports model strings like:
- kilo/glm-5-free            (explicit provider, no fallback)
- openrouter/openai/gpt-4o   (provider plus a model id that itself contains "/")
- glm-5-free                 (short name, looked up across every provider)

Short names served by several providers resolve to an ordered candidate list so
the session loop can move to a sibling provider after a hard failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import ModelNotFoundError
from .provider_catalog import ProviderCatalog

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_PREFERENCE: Tuple[str, ...] = (
    "opencode",
    "kilo",
    "openrouter",
    "openai",
    "anthropic",
    "google",
)

DRY_RUN_MODEL = "echo/echo"


@dataclass(frozen=True)
class ModelDescriptor:
    """A concrete (provider, model) pair.

    ``model_id`` is what users see in logs and events; ``api_model_id`` is the
    id sent upstream. They differ only when the catalog aliases the model.
    """

    provider_id: str
    model_id: str
    api_model_id: str
    was_explicit: bool = False

    @property
    def route(self) -> str:
        return f"{self.provider_id}/{self.model_id}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "api_model_id": self.api_model_id,
            "was_explicit": self.was_explicit,
        }


class ProviderCandidateList:
    """Ordered, de-duplicated candidates from one resolution. Iterable once."""

    def __init__(self, candidates: Sequence[ModelDescriptor]) -> None:
        seen: Set[Tuple[str, str]] = set()
        ordered: List[ModelDescriptor] = []
        for candidate in candidates:
            key = (candidate.provider_id, candidate.api_model_id)
            if key in seen:
                continue
            seen.add(key)
            ordered.append(candidate)
        self._candidates: Tuple[ModelDescriptor, ...] = tuple(ordered)
        self._consumed = False

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[ModelDescriptor]:
        if self._consumed:
            raise RuntimeError("candidate list has already been consumed")
        self._consumed = True
        return iter(self._candidates)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def primary(self) -> ModelDescriptor:
        return self._candidates[0]

    @property
    def was_explicit(self) -> bool:
        return bool(self._candidates) and self._candidates[0].was_explicit

    def describe(self) -> List[str]:
        return [candidate.route for candidate in self._candidates]


class ModelResolver:
    """Maps user model strings onto catalog providers."""

    def __init__(
        self,
        catalog: Optional[ProviderCatalog] = None,
        *,
        provider_preference: Optional[Sequence[str]] = None,
        default_model: Optional[str] = None,
    ) -> None:
        self.catalog = catalog or ProviderCatalog.default()
        self.provider_preference: Tuple[str, ...] = tuple(
            provider_preference if provider_preference is not None else DEFAULT_PROVIDER_PREFERENCE
        )
        self._default_model = default_model

    @staticmethod
    def parse_model(model: str) -> Tuple[Optional[str], str]:
        """Split ``provider/model/with/slashes`` on the first separator only."""
        parts = model.split("/")
        if len(parts) == 1:
            return None, parts[0]
        return parts[0], "/".join(parts[1:])

    def preference_rank(self, provider_id: str) -> int:
        try:
            return self.provider_preference.index(provider_id)
        except ValueError:
            return len(self.provider_preference)

    def _suggestion(self, model: str) -> str:
        available = ", ".join(self.catalog.sample_models(limit=6))
        return f'Model "{model}" not found. Available models include: {available}'

    def resolve(self, model: str) -> ProviderCandidateList:
        text = (model or "").strip()
        if not text:
            raise ModelNotFoundError(text, suggestion=self._suggestion(text))

        provider_id, model_id = self.parse_model(text)
        if provider_id is not None:
            return self._resolve_explicit(text, provider_id, model_id)
        return self._resolve_short(text)

    def _resolve_explicit(self, text: str, provider_id: str, model_id: str) -> ProviderCandidateList:
        provider = self.catalog.get(provider_id)
        if provider is None or not model_id:
            raise ModelNotFoundError(text, provider_id=provider_id, suggestion=self._suggestion(text))

        info = provider.find_model(model_id)
        if info is None:
            # Providers often serve models the static catalog does not list.
            logger.info("model %s not in catalog for %s; passing through", model_id, provider_id)
            descriptor = ModelDescriptor(provider_id, model_id, model_id, was_explicit=True)
        else:
            descriptor = ModelDescriptor(provider_id, info.id, info.api_id, was_explicit=True)
        return ProviderCandidateList([descriptor])

    def _resolve_short(self, text: str) -> ProviderCandidateList:
        providers = self.catalog.providers_for(text)
        if not providers:
            raise ModelNotFoundError(text, suggestion=self._suggestion(text))

        catalog_order = {pid: idx for idx, pid in enumerate(self.catalog.provider_ids())}
        providers.sort(key=lambda pid: (self.preference_rank(pid), catalog_order.get(pid, 0)))

        candidates: List[ModelDescriptor] = []
        for pid in providers:
            info = self.catalog.find_model(pid, text)
            if info is None:  # pragma: no cover - providers_for guarantees a hit
                continue
            candidates.append(ModelDescriptor(pid, info.id, info.api_id, was_explicit=False))

        result = ProviderCandidateList(candidates)
        logger.info("resolved %s to %s", text, result.describe())
        return result

    def get_alternative_providers(
        self,
        model_id: str,
        failed_provider_id: str,
        was_explicit: bool,
    ) -> Set[str]:
        """Other providers sharing ``model_id``; empty for explicit selections."""
        if was_explicit:
            return set()
        providers = set(self.catalog.providers_for(model_id))
        providers.discard(failed_provider_id)
        return providers

    def default_model(self, *, dry_run: bool = False) -> str:
        if dry_run:
            return DRY_RUN_MODEL
        if self._default_model:
            return self._default_model
        ranked = sorted(
            (pid for pid in self.catalog.provider_ids() if pid != "echo"),
            key=self.preference_rank,
        )
        for pid in ranked:
            provider = self.catalog.get(pid)
            if provider is not None and provider.models:
                return f"{pid}/{next(iter(provider.models))}"
        return DRY_RUN_MODEL
