"""Provider adapters, the adapter registry and the per-agent client cache."""

from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

from .auth import Credentials
from .errors import (
    ErrorKind,
    FatalProviderError,
    ProviderError,
    RetryableProviderError,
)
from .package_installer import PackageInstaller
from .provider_catalog import ProviderInfo
from .provider_ir import StreamEvent
from .provider_routing import ModelDescriptor
from .retry_policy import parse_retry_after
from .tools import ToolSpec

logger = logging.getLogger(__name__)


@dataclass
class StreamOptions:
    """Per-request knobs passed through to the adapter."""

    tools: List[ToolSpec] = field(default_factory=list)
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _normalize_headers(headers: Any) -> Dict[str, str]:
    """Return a lower-cased copy of response headers for diagnostics."""

    normalized: Dict[str, str] = {}
    if headers is None:
        return normalized
    try:
        items = headers.items() if hasattr(headers, "items") else headers
        for key, value in items:
            if key is None or value is None:
                continue
            normalized[str(key).lower()] = str(value)
    except (TypeError, ValueError):
        return {}
    return normalized


def _to_plain(value: Any) -> Any:
    """Best-effort conversion of SDK model objects into JSON-compatible dicts."""
    if value is None or isinstance(value, (str, int, float, bool, dict, list)):
        return value
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        try:
            return dump()
        except (TypeError, ValueError):
            return None
    try:
        return dict(value)
    except (TypeError, ValueError):
        return None


def _exception_names(exc: BaseException) -> List[str]:
    return [cls.__name__ for cls in type(exc).__mro__]


_CONNECTION_MARKERS = (
    "connection reset",
    "connection closed",
    "connection aborted",
    "socket hang up",
    "econnreset",
    "broken pipe",
    "remote end closed",
    "incomplete chunked read",
    "peer closed connection",
)

_CONTENT_POLICY_MARKERS = ("content policy", "content_policy", "safety system", "content management policy")


def classify_http_error(exc: BaseException, provider_id: str, model_id: Optional[str]) -> ProviderError:
    """Map an SDK or transport exception to the agent error taxonomy."""

    if isinstance(exc, ProviderError):
        if exc.provider_id is None:
            exc.provider_id = provider_id
        if exc.model_id is None:
            exc.model_id = model_id
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    names = _exception_names(exc)
    status = _get_attr(exc, "status_code")
    if not isinstance(status, int):
        status = None
    response = _get_attr(exc, "response")
    headers = _normalize_headers(_get_attr(response, "headers"))
    common: Dict[str, Any] = {
        "provider_id": provider_id,
        "model_id": model_id,
        "status_code": status,
        "has_headers": bool(headers),
    }
    request_id = headers.get("x-request-id") or headers.get("request-id")
    details = {"exception": exc.__class__.__name__}
    if request_id:
        details["request_id"] = request_id

    if status is not None:
        if status == 429:
            return RetryableProviderError(
                message,
                kind=ErrorKind.RATE_LIMITED,
                retry_after_ms=parse_retry_after(headers),
                details=details,
                **common,
            )
        if status >= 500 or status in (408, 409):
            return RetryableProviderError(
                message,
                kind=ErrorKind.SERVER_ERROR,
                retry_after_ms=parse_retry_after(headers),
                details=details,
                **common,
            )
        if status in (401, 403):
            return FatalProviderError(message, kind=ErrorKind.AUTH, details=details, **common)
        if status == 404:
            return FatalProviderError(message, kind=ErrorKind.MODEL_NOT_FOUND, details=details, **common)
        if any(marker in lowered for marker in _CONTENT_POLICY_MARKERS):
            return FatalProviderError(message, kind=ErrorKind.CONTENT_POLICY, details=details, **common)
        return FatalProviderError(message, kind=ErrorKind.BAD_REQUEST, details=details, **common)

    if any("Timeout" in name for name in names):
        return RetryableProviderError(message, kind=ErrorKind.TIMEOUT, details=details, **common)
    if isinstance(exc, json.JSONDecodeError):
        return RetryableProviderError(message, kind=ErrorKind.STREAM_PARSE, details=details, **common)
    if (
        "APIConnectionError" in names
        or isinstance(exc, (ConnectionError, EOFError))
        or any(name in names for name in ("RemoteProtocolError", "ReadError", "NetworkError"))
        or any(marker in lowered for marker in _CONNECTION_MARKERS)
    ):
        return RetryableProviderError(message, kind=ErrorKind.CONNECTION_STALLED, details=details, **common)
    if "AuthenticationError" in names or "PermissionDeniedError" in names:
        return FatalProviderError(message, kind=ErrorKind.AUTH, details=details, **common)
    return FatalProviderError(message, kind=ErrorKind.UNKNOWN, details=details, **common)


# ---------------------------------------------------------------------------
# Base adapter + registry
# ---------------------------------------------------------------------------


class ProviderAdapter:
    """Interface every provider adapter implements."""

    runtime_id = ""
    sdk_module: Optional[str] = None
    sdk_package: Optional[str] = None
    requires_api_key = True

    def __init__(self, provider: ProviderInfo) -> None:
        self.provider = provider

    def create_client(self, credentials: Credentials, sdk: Any = None) -> Any:
        raise NotImplementedError

    def open_stream(
        self,
        client: Any,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    def classify_error(self, exc: BaseException, candidate: Optional[ModelDescriptor] = None) -> ProviderError:
        model_id = candidate.model_id if candidate is not None else None
        return classify_http_error(exc, self.provider.id, model_id)


class ProviderRuntimeRegistry:
    """Registry that maps runtime identifiers to adapter classes."""

    def __init__(self) -> None:
        self._adapter_classes: Dict[str, Type[ProviderAdapter]] = {}

    def register_runtime(self, runtime_id: str, adapter_cls: Type[ProviderAdapter]) -> None:
        if not issubclass(adapter_cls, ProviderAdapter):
            raise TypeError(f"Adapter {adapter_cls!r} must inherit ProviderAdapter")
        self._adapter_classes[runtime_id] = adapter_cls

    def get_runtime_class(self, runtime_id: str) -> Optional[Type[ProviderAdapter]]:
        return self._adapter_classes.get(runtime_id)

    def runtime_ids(self) -> List[str]:
        return sorted(self._adapter_classes)

    def create_adapter(self, provider: ProviderInfo) -> ProviderAdapter:
        adapter_cls = self.get_runtime_class(provider.runtime_id)
        if adapter_cls is None:
            raise FatalProviderError(
                f"Unknown provider runtime '{provider.runtime_id}' for provider '{provider.id}'",
                kind=ErrorKind.PROVIDER_INIT,
                provider_id=provider.id,
            )
        return adapter_cls(provider)


provider_registry = ProviderRuntimeRegistry()


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAIChatAdapter(ProviderAdapter):
    """Chat Completions streaming for OpenAI and OpenAI-compatible gateways."""

    runtime_id = "openai_chat"
    sdk_module = "openai"
    sdk_package = "openai"

    def create_client(self, credentials: Credentials, sdk: Any = None) -> Any:
        sdk = sdk or importlib.import_module("openai")
        kwargs: Dict[str, Any] = {"api_key": credentials.api_key, "max_retries": 0}
        if self.provider.base_url:
            kwargs["base_url"] = self.provider.base_url
        if self.provider.default_headers:
            kwargs["default_headers"] = dict(self.provider.default_headers)
        return sdk.AsyncOpenAI(**kwargs)

    def convert_messages(self, conversation: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for message in conversation:
            role = message.get("role", "user")
            if role == "tool":
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.get("tool_call_id"),
                        "content": message.get("content") or "",
                    }
                )
                continue
            entry: Dict[str, Any] = {"role": role, "content": message.get("content")}
            calls = message.get("tool_calls") or []
            if role == "assistant" and calls:
                entry["tool_calls"] = [
                    {
                        "id": call.get("id"),
                        "type": "function",
                        "function": {
                            "name": call.get("name"),
                            "arguments": call.get("arguments")
                            if isinstance(call.get("arguments"), str)
                            else json.dumps(call.get("arguments") or {}),
                        },
                    }
                    for call in calls
                ]
            elif entry["content"] is None:
                entry["content"] = ""
            converted.append(entry)
        return converted

    def build_request(
        self,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": candidate.api_model_id,
            "messages": self.convert_messages(conversation),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if options.tools:
            request["tools"] = [spec.to_openai() for spec in options.tools]
        if options.max_output_tokens:
            request["max_tokens"] = int(options.max_output_tokens)
        if options.temperature is not None:
            request["temperature"] = float(options.temperature)
        request.update(options.extra)
        return request

    async def open_stream(
        self,
        client: Any,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        request = self.build_request(candidate, conversation, options)
        stream = await client.chat.completions.create(**request)
        pending: Dict[int, Dict[str, Any]] = {}
        finish_reason: Any = None
        usage: Any = None
        model: Optional[str] = None
        try:
            async for chunk in stream:
                surfaced = False
                model = _get_attr(chunk, "model") or model
                chunk_usage = _get_attr(chunk, "usage")
                if chunk_usage is not None:
                    usage = _to_plain(chunk_usage)
                for choice in _get_attr(chunk, "choices") or []:
                    delta = _get_attr(choice, "delta")
                    text = _get_attr(delta, "content")
                    if text:
                        surfaced = True
                        yield StreamEvent.text_delta(str(text))
                    reasoning = _get_attr(delta, "reasoning_content") or _get_attr(delta, "reasoning")
                    if isinstance(reasoning, str) and reasoning:
                        surfaced = True
                        yield StreamEvent.reasoning_delta(reasoning)
                    for raw_call in _get_attr(delta, "tool_calls") or []:
                        index = _get_attr(raw_call, "index", 0) or 0
                        slot = pending.setdefault(index, {"id": None, "name": "", "arguments": ""})
                        call_id = _get_attr(raw_call, "id")
                        if call_id:
                            slot["id"] = call_id
                        fn = _get_attr(raw_call, "function")
                        name = _get_attr(fn, "name")
                        if name:
                            slot["name"] = name
                        args = _get_attr(fn, "arguments")
                        if args:
                            slot["arguments"] += str(args)
                    reason = _get_attr(choice, "finish_reason")
                    if reason is not None:
                        finish_reason = reason
                if not surfaced:
                    # tool-call arguments, role and usage chunks still prove the stream is alive
                    yield StreamEvent.heartbeat()
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                result = close()
                if hasattr(result, "__await__"):
                    await result

        for index in sorted(pending):
            slot = pending[index]
            yield StreamEvent.tool_call(slot["id"] or f"call_{index}", slot["name"], slot["arguments"] or "{}")
        if finish_reason is not None or usage is not None:
            yield StreamEvent.step_finish(finish_reason, usage, model=model)


provider_registry.register_runtime("openai_chat", OpenAIChatAdapter)


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


class AnthropicMessagesAdapter(ProviderAdapter):
    """Messages API streaming via the anthropic SDK."""

    runtime_id = "anthropic_messages"
    sdk_module = "anthropic"
    sdk_package = "anthropic"
    default_max_tokens = 4096

    def create_client(self, credentials: Credentials, sdk: Any = None) -> Any:
        sdk = sdk or importlib.import_module("anthropic")
        kwargs: Dict[str, Any] = {"api_key": credentials.api_key, "max_retries": 0}
        if self.provider.base_url:
            kwargs["base_url"] = self.provider.base_url
        if self.provider.default_headers:
            kwargs["default_headers"] = dict(self.provider.default_headers)
        return sdk.AsyncAnthropic(**kwargs)

    def convert_messages(self, conversation: List[Dict[str, Any]]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for message in conversation:
            role = message.get("role")
            content = message.get("content")
            if role == "system":
                if content:
                    system_parts.append(content if isinstance(content, str) else json.dumps(content))
                continue

            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id"),
                    "content": content or "",
                }
                if converted and converted[-1]["role"] == "user" and converted[-1].get("_tool_results"):
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block], "_tool_results": True})
                continue

            blocks: List[Dict[str, Any]] = []
            if isinstance(content, list):
                blocks.extend(content)
            elif content:
                blocks.append({"type": "text", "text": content})
            if role == "assistant":
                for call in message.get("tool_calls") or []:
                    arguments = call.get("arguments")
                    if isinstance(arguments, str):
                        try:
                            arguments = json.loads(arguments or "{}")
                        except json.JSONDecodeError:
                            arguments = {"raw": arguments}
                    blocks.append(
                        {"type": "tool_use", "id": call.get("id"), "name": call.get("name"), "input": arguments or {}}
                    )
            if not blocks:
                blocks.append({"type": "text", "text": ""})
            converted.append({"role": role or "user", "content": blocks})

        for entry in converted:
            entry.pop("_tool_results", None)
        system_prompt = "\n\n".join(system_parts) if system_parts else None
        return system_prompt, converted

    def build_request(
        self,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> Dict[str, Any]:
        system_prompt, messages = self.convert_messages(conversation)
        request: Dict[str, Any] = {
            "model": candidate.api_model_id,
            "messages": messages,
            "max_tokens": int(options.max_output_tokens or self.default_max_tokens),
            "stream": True,
        }
        if system_prompt:
            request["system"] = system_prompt
        if options.tools:
            request["tools"] = [spec.to_anthropic() for spec in options.tools]
        if options.temperature is not None:
            request["temperature"] = float(options.temperature)
        request.update(options.extra)
        return request

    async def open_stream(
        self,
        client: Any,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        request = self.build_request(candidate, conversation, options)
        stream = await client.messages.create(**request)
        usage: Dict[str, Any] = {}
        stop_reason: Any = None
        model: Optional[str] = None
        blocks: Dict[int, Dict[str, Any]] = {}
        finished = False
        try:
            async for event in stream:
                surfaced = False
                event_type = _get_attr(event, "type")
                if event_type == "message_start":
                    message = _get_attr(event, "message")
                    model = _get_attr(message, "model") or model
                    usage.update(_to_plain(_get_attr(message, "usage")) or {})
                elif event_type == "content_block_start":
                    block = _get_attr(event, "content_block")
                    if _get_attr(block, "type") == "tool_use":
                        blocks[_get_attr(event, "index", 0)] = {
                            "id": _get_attr(block, "id"),
                            "name": _get_attr(block, "name"),
                            "json": "",
                        }
                elif event_type == "content_block_delta":
                    delta = _get_attr(event, "delta")
                    delta_type = _get_attr(delta, "type")
                    if delta_type == "text_delta":
                        surfaced = True
                        yield StreamEvent.text_delta(str(_get_attr(delta, "text", "")))
                    elif delta_type == "thinking_delta":
                        surfaced = True
                        yield StreamEvent.reasoning_delta(str(_get_attr(delta, "thinking", "")))
                    elif delta_type == "input_json_delta":
                        slot = blocks.get(_get_attr(event, "index", 0))
                        if slot is not None:
                            slot["json"] += str(_get_attr(delta, "partial_json", ""))
                elif event_type == "content_block_stop":
                    slot = blocks.pop(_get_attr(event, "index", 0), None)
                    if slot is not None:
                        surfaced = True
                        yield StreamEvent.tool_call(slot["id"], slot["name"], slot["json"] or "{}")
                elif event_type == "message_delta":
                    delta = _get_attr(event, "delta")
                    stop_reason = _get_attr(delta, "stop_reason", stop_reason)
                    for key, value in (_to_plain(_get_attr(event, "usage")) or {}).items():
                        if value is not None:
                            usage[key] = value
                elif event_type == "message_stop":
                    finished = True
                elif event_type == "error":
                    error = _get_attr(event, "error")
                    error_type = _get_attr(error, "type")
                    message = str(_get_attr(error, "message", "provider stream error"))
                    if error_type in ("overloaded_error", "api_error"):
                        exc: ProviderError = RetryableProviderError(
                            message, kind=ErrorKind.SERVER_ERROR, provider_id=self.provider.id
                        )
                    elif error_type == "rate_limit_error":
                        exc = RetryableProviderError(
                            message, kind=ErrorKind.RATE_LIMITED, provider_id=self.provider.id
                        )
                    else:
                        exc = FatalProviderError(message, kind=ErrorKind.BAD_REQUEST, provider_id=self.provider.id)
                    surfaced = True
                    yield StreamEvent.error_event(exc)
                if not surfaced:
                    yield StreamEvent.heartbeat()
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                result = close()
                if hasattr(result, "__await__"):
                    await result

        if finished or stop_reason is not None:
            yield StreamEvent.step_finish(stop_reason, usage, model=model)


provider_registry.register_runtime("anthropic_messages", AnthropicMessagesAdapter)


# ---------------------------------------------------------------------------
# Echo adapter (dry run, no network)
# ---------------------------------------------------------------------------


class EchoAdapter(ProviderAdapter):
    """Echoes the last user message back; used for dry runs."""

    runtime_id = "echo"
    requires_api_key = False

    def create_client(self, credentials: Credentials, sdk: Any = None) -> Any:
        return None

    async def open_stream(
        self,
        client: Any,
        candidate: ModelDescriptor,
        conversation: List[Dict[str, Any]],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        last_user = ""
        for message in reversed(conversation):
            if message.get("role") == "user":
                last_user = str(message.get("content") or "")
                break
        prompt_words = sum(len(str(m.get("content") or "").split()) for m in conversation)
        text = last_user or "(empty prompt)"
        yield StreamEvent.text_delta(text)
        yield StreamEvent.step_finish(
            "stop",
            {"input_tokens": max(1, prompt_words), "output_tokens": max(1, len(text.split()))},
            model=candidate.api_model_id,
        )


provider_registry.register_runtime("echo", EchoAdapter)


# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------


class ProviderClientFactory:
    """Creates adapters and SDK clients once per (provider, credentials)."""

    def __init__(
        self,
        *,
        registry: Optional[ProviderRuntimeRegistry] = None,
        installer: Optional[PackageInstaller] = None,
    ) -> None:
        self.registry = registry or provider_registry
        self.installer = installer or PackageInstaller()
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._clients: Dict[Tuple[str, str, str], Any] = {}

    def adapter_for(self, provider: ProviderInfo) -> ProviderAdapter:
        adapter = self._adapters.get(provider.id)
        if adapter is None or adapter.provider is not provider:
            adapter = self.registry.create_adapter(provider)
            self._adapters[provider.id] = adapter
        return adapter

    async def get_client(self, provider: ProviderInfo, credentials: Credentials) -> Any:
        key = (provider.id, credentials.fingerprint, provider.base_url or "")
        if key in self._clients:
            return self._clients[key]

        adapter = self.adapter_for(provider)
        sdk = None
        if adapter.sdk_module:
            sdk = await self.installer.ensure_module(adapter.sdk_module, adapter.sdk_package)
        try:
            client = adapter.create_client(credentials, sdk)
        except ProviderError:
            raise
        except Exception as exc:  # SDK constructors raise assorted errors on bad settings
            raise FatalProviderError(
                f"Failed to initialize client for provider '{provider.id}': {exc}",
                kind=ErrorKind.PROVIDER_INIT,
                provider_id=provider.id,
            ) from exc
        logger.info("initialized %s client for %s", adapter.runtime_id, provider.id)
        self._clients[key] = client
        return client

    def invalidate(self, provider_id: str) -> None:
        for key in [key for key in self._clients if key[0] == provider_id]:
            self._clients.pop(key, None)


__all__ = [
    "AnthropicMessagesAdapter",
    "EchoAdapter",
    "OpenAIChatAdapter",
    "ProviderAdapter",
    "ProviderClientFactory",
    "ProviderRuntimeRegistry",
    "StreamOptions",
    "classify_http_error",
    "provider_registry",
]
