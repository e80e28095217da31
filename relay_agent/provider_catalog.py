"""
Static catalog of providers and the models they serve.

The catalog is read-only to the core: the resolver looks models up here and the
step processor reads cost tiers from it. ``apply_overrides`` merges the
``providers`` section of the user config on top of the built-in entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigValidationError


@dataclass(frozen=True)
class ModelCost:
    """USD per million tokens."""

    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0
    context_over_200k: Optional["ModelCost"] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelCost":
        data = data or {}
        over = data.get("context_over_200k")
        return cls(
            input=float(data.get("input", 0) or 0),
            output=float(data.get("output", 0) or 0),
            cache_read=float(data.get("cache_read", 0) or 0),
            cache_write=float(data.get("cache_write", 0) or 0),
            context_over_200k=cls.from_dict(over) if isinstance(over, dict) else None,
        )


@dataclass(frozen=True)
class ModelInfo:
    """A model as listed by one provider.

    ``id`` is the friendly key users type; ``api_id`` is what goes upstream.
    """

    id: str
    api_id: str
    name: str = ""
    aliases: Tuple[str, ...] = ()
    cost: ModelCost = field(default_factory=ModelCost)
    context_limit: int = 128_000
    output_limit: int = 16_384

    @property
    def is_free(self) -> bool:
        return self.cost.input == 0 and self.cost.output == 0


@dataclass(frozen=True)
class ProviderInfo:
    id: str
    label: str
    runtime_id: str
    base_url: Optional[str] = None
    api_key_env: Tuple[str, ...] = ()
    default_api_key: Optional[str] = None
    default_headers: Dict[str, str] = field(default_factory=dict)
    # Anthropic-style usage already excludes cached tokens from the input count.
    excludes_cached_input: bool = False
    models: Dict[str, ModelInfo] = field(default_factory=dict)

    def find_model(self, model_id: str) -> Optional[ModelInfo]:
        model = self.models.get(model_id)
        if model is not None:
            return model
        lowered = model_id.lower()
        for candidate in self.models.values():
            if lowered in (alias.lower() for alias in candidate.aliases):
                return candidate
        return None


def _m(
    model_id: str,
    api_id: Optional[str] = None,
    name: str = "",
    *,
    aliases: Iterable[str] = (),
    cost: Optional[Dict[str, Any]] = None,
    context: int = 128_000,
    output: int = 16_384,
) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        api_id=api_id or model_id,
        name=name or model_id,
        aliases=tuple(aliases),
        cost=ModelCost.from_dict(cost),
        context_limit=context,
        output_limit=output,
    )


def _models(*items: ModelInfo) -> Dict[str, ModelInfo]:
    return {item.id: item for item in items}


def _builtin_providers() -> Dict[str, ProviderInfo]:
    return {
        "opencode": ProviderInfo(
            id="opencode",
            label="OpenCode Zen",
            runtime_id="openai_chat",
            base_url="https://opencode.ai/zen/v1",
            api_key_env=("OPENCODE_API_KEY",),
            default_api_key="public",
            models=_models(
                _m("kimi-k2.5-free", name="Kimi K2.5 (Free)", context=262_144),
                _m("minimax-m2.5-free", name="MiniMax M2.5 (Free)", context=204_800),
                _m("gpt-5-nano", name="GPT-5 Nano", context=400_000),
                _m("big-pickle", name="Big Pickle", context=200_000),
            ),
        ),
        "kilo": ProviderInfo(
            id="kilo",
            label="Kilo Gateway",
            runtime_id="openai_chat",
            base_url="https://api.kilo.ai/api/openrouter",
            api_key_env=("KILO_API_KEY",),
            default_api_key="anonymous",
            default_headers={
                "User-Agent": "relay-agent-kilo-provider",
                "X-KILOCODE-EDITORNAME": "relay-agent",
            },
            models=_models(
                _m("glm-5-free", "z-ai/glm-5:free", "GLM-5 (Free)", context=202_800, output=131_072),
                _m("glm-4.5-air-free", "z-ai/glm-4.5-air:free", "GLM 4.5 Air (Free)"),
                _m("minimax-m2.5-free", "minimax/minimax-m2.5:free", "MiniMax M2.5 (Free)"),
                _m("giga-potato-free", "giga-potato", "Giga Potato (Free)"),
                _m("trinity-large-preview", "arcee-ai/trinity-large-preview:free", "Trinity Large Preview (Free)"),
                _m("deepseek-r1-free", "deepseek/deepseek-r1-0528:free", "DeepSeek R1 (Free)"),
            ),
        ),
        "openrouter": ProviderInfo(
            id="openrouter",
            label="OpenRouter",
            runtime_id="openai_chat",
            base_url="https://openrouter.ai/api/v1",
            api_key_env=("OPENROUTER_API_KEY",),
            default_headers={"X-Title": "relay-agent"},
            models=_models(
                _m(
                    "openai/gpt-4o-mini",
                    cost={"input": 0.15, "output": 0.6, "cache_read": 0.075},
                ),
                _m(
                    "anthropic/claude-sonnet-4.5",
                    cost={"input": 3, "output": 15, "cache_read": 0.3, "cache_write": 3.75},
                    context=200_000,
                ),
            ),
        ),
        "openai": ProviderInfo(
            id="openai",
            label="OpenAI",
            runtime_id="openai_chat",
            api_key_env=("OPENAI_API_KEY",),
            models=_models(
                _m(
                    "gpt-5",
                    name="GPT-5",
                    cost={"input": 1.25, "output": 10, "cache_read": 0.125},
                    context=400_000,
                    output=128_000,
                ),
                _m(
                    "gpt-5-nano",
                    name="GPT-5 Nano",
                    cost={"input": 0.05, "output": 0.4, "cache_read": 0.005},
                    context=400_000,
                    output=128_000,
                ),
                _m(
                    "gpt-4o-mini",
                    name="GPT-4o mini",
                    cost={"input": 0.15, "output": 0.6, "cache_read": 0.075},
                ),
            ),
        ),
        "anthropic": ProviderInfo(
            id="anthropic",
            label="Anthropic",
            runtime_id="anthropic_messages",
            api_key_env=("ANTHROPIC_API_KEY",),
            excludes_cached_input=True,
            models=_models(
                _m(
                    "claude-sonnet-4-5",
                    name="Claude Sonnet 4.5",
                    aliases=("claude-sonnet-4.5",),
                    cost={
                        "input": 3,
                        "output": 15,
                        "cache_read": 0.3,
                        "cache_write": 3.75,
                        "context_over_200k": {
                            "input": 6,
                            "output": 22.5,
                            "cache_read": 0.6,
                            "cache_write": 7.5,
                        },
                    },
                    context=1_000_000,
                    output=64_000,
                ),
                _m(
                    "claude-haiku-4-5",
                    name="Claude Haiku 4.5",
                    aliases=("claude-haiku-4.5",),
                    cost={"input": 1, "output": 5, "cache_read": 0.1, "cache_write": 1.25},
                    context=200_000,
                    output=64_000,
                ),
            ),
        ),
        "google": ProviderInfo(
            id="google",
            label="Google Gemini",
            runtime_id="openai_chat",
            base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
            api_key_env=("GEMINI_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"),
            models=_models(
                _m(
                    "gemini-3-pro",
                    "gemini-3-pro-preview",
                    "Gemini 3 Pro",
                    cost={"input": 2, "output": 12, "cache_read": 0.2},
                    context=1_000_000,
                    output=65_536,
                ),
                _m(
                    "gemini-2.5-flash",
                    name="Gemini 2.5 Flash",
                    cost={"input": 0.3, "output": 2.5, "cache_read": 0.075},
                    context=1_000_000,
                    output=65_536,
                ),
            ),
        ),
        "echo": ProviderInfo(
            id="echo",
            label="Echo (dry run)",
            runtime_id="echo",
            models=_models(_m("echo", name="Echo Model", context=1_000_000, output=100_000)),
        ),
    }


class ProviderCatalog:
    """Read-only lookup over providers and their models."""

    def __init__(self, providers: Optional[Dict[str, ProviderInfo]] = None) -> None:
        self._providers: Dict[str, ProviderInfo] = dict(providers or {})

    @classmethod
    def default(cls) -> "ProviderCatalog":
        return cls(_builtin_providers())

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def provider_ids(self) -> List[str]:
        return list(self._providers)

    def get(self, provider_id: str) -> Optional[ProviderInfo]:
        return self._providers.get(provider_id)

    def find_model(self, provider_id: str, model_id: str) -> Optional[ModelInfo]:
        provider = self._providers.get(provider_id)
        if provider is None:
            return None
        return provider.find_model(model_id)

    def providers_for(self, model_id: str) -> List[str]:
        """Providers whose catalog lists ``model_id`` (by id or alias), in catalog order."""
        return [pid for pid, info in self._providers.items() if info.find_model(model_id) is not None]

    def sample_models(self, limit: int = 6) -> List[str]:
        out: List[str] = []
        for pid, info in self._providers.items():
            for model_id in list(info.models)[:3]:
                out.append(f"{pid}/{model_id}")
            if len(out) >= limit:
                break
        return out[:limit]

    def apply_overrides(self, overrides: Optional[Dict[str, Any]]) -> "ProviderCatalog":
        """Return a new catalog with config ``providers`` entries merged in."""
        if not overrides:
            return self
        if not isinstance(overrides, dict):
            raise ConfigValidationError("providers must be a mapping of provider id to settings")

        merged = dict(self._providers)
        for provider_id, raw in overrides.items():
            if not isinstance(raw, dict):
                raise ConfigValidationError(f"provider '{provider_id}' settings must be a mapping")
            base = merged.get(provider_id)
            if base is None:
                runtime_id = raw.get("runtime", "openai_chat")
                base = ProviderInfo(id=provider_id, label=raw.get("label", provider_id), runtime_id=runtime_id)

            models = dict(base.models)
            for model_id, model_raw in (raw.get("models") or {}).items():
                model_raw = model_raw or {}
                if not isinstance(model_raw, dict):
                    raise ConfigValidationError(f"model '{provider_id}/{model_id}' settings must be a mapping")
                models[model_id] = _m(
                    model_id,
                    model_raw.get("id") or model_raw.get("api_id"),
                    model_raw.get("name", ""),
                    aliases=model_raw.get("aliases") or (),
                    cost=model_raw.get("cost"),
                    context=int(model_raw.get("context", 128_000)),
                    output=int(model_raw.get("output", 16_384)),
                )

            api_key_env = raw.get("api_key_env", base.api_key_env)
            if isinstance(api_key_env, str):
                api_key_env = (api_key_env,)
            headers = dict(base.default_headers)
            headers.update(raw.get("headers") or {})
            merged[provider_id] = replace(
                base,
                label=raw.get("label", base.label),
                runtime_id=raw.get("runtime", base.runtime_id),
                base_url=raw.get("base_url", base.base_url),
                api_key_env=tuple(api_key_env),
                default_api_key=raw.get("api_key", base.default_api_key),
                default_headers=headers,
                excludes_cached_input=bool(raw.get("excludes_cached_input", base.excludes_cached_input)),
                models=models,
            )
        return ProviderCatalog(merged)
