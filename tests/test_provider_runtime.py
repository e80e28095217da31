import asyncio
import json
from types import SimpleNamespace

import pytest

from relay_agent.auth import Credentials
from relay_agent.errors import ErrorKind, FatalProviderError, ProviderError
from relay_agent.package_installer import PackageInstaller
from relay_agent.provider_catalog import ProviderCatalog, ProviderInfo
from relay_agent.provider_routing import ModelDescriptor
from relay_agent.provider_runtime import (
    AnthropicMessagesAdapter,
    EchoAdapter,
    OpenAIChatAdapter,
    ProviderAdapter,
    ProviderClientFactory,
    ProviderRuntimeRegistry,
    StreamOptions,
    classify_http_error,
    provider_registry,
)
from relay_agent.tools import ToolSpec

from provider_fakes import FakeStatusError


class FakeStream:
    def __init__(self, items):
        self.items = list(items)
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.items:
            yield item

    async def close(self):
        self.closed = True


def _collect(agen):
    async def main():
        return [event async for event in agen]

    return asyncio.run(main())


def _without_heartbeats(events):
    return [event for event in events if event.type != "heartbeat"]


def _openai_client(stream, captured):
    async def create(**request):
        captured.update(request)
        return stream

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def _anthropic_client(stream, captured):
    async def create(**request):
        captured.update(request)
        return stream

    return SimpleNamespace(messages=SimpleNamespace(create=create))


CATALOG = ProviderCatalog.default()


@pytest.mark.parametrize(
    "exc, kind, retryable",
    [
        (FakeStatusError(429, "slow down"), ErrorKind.RATE_LIMITED, True),
        (FakeStatusError(500, "boom"), ErrorKind.SERVER_ERROR, True),
        (FakeStatusError(529, "overloaded"), ErrorKind.SERVER_ERROR, True),
        (FakeStatusError(408, "request timeout"), ErrorKind.SERVER_ERROR, True),
        (FakeStatusError(401, "bad key"), ErrorKind.AUTH, False),
        (FakeStatusError(403, "forbidden"), ErrorKind.AUTH, False),
        (FakeStatusError(404, "no model"), ErrorKind.MODEL_NOT_FOUND, False),
        (FakeStatusError(400, "violates our content policy"), ErrorKind.CONTENT_POLICY, False),
        (FakeStatusError(422, "bad field"), ErrorKind.BAD_REQUEST, False),
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT, True),
        (json.JSONDecodeError("Expecting value", "", 0), ErrorKind.STREAM_PARSE, True),
        (ConnectionResetError("reset by peer"), ErrorKind.CONNECTION_STALLED, True),
        (RuntimeError("peer closed connection without sending complete message body"), ErrorKind.CONNECTION_STALLED, True),
        (KeyError("choices"), ErrorKind.UNKNOWN, False),
    ],
)
def test_classify_http_error(exc, kind, retryable):
    err = classify_http_error(exc, "kilo", "glm-5-free")
    assert err.kind == kind
    assert err.retryable is retryable
    assert err.provider_id == "kilo"
    assert err.model_id == "glm-5-free"


def test_classify_rate_limit_carries_headers_and_hint():
    exc = FakeStatusError(429, "quota", headers={"Retry-After": "12", "x-request-id": "req_1"})
    err = classify_http_error(exc, "openai", "gpt-5")
    assert err.retry_after_ms == 12_000
    assert err.has_headers
    assert err.status_code == 429
    assert err.details["request_id"] == "req_1"


def test_classify_passes_provider_errors_through():
    original = FatalProviderError("nope", kind=ErrorKind.AUTH)
    assert classify_http_error(original, "kilo", "m") is original
    assert original.provider_id == "kilo"


def test_openai_adapter_streams_text_tool_calls_and_usage():
    adapter = OpenAIChatAdapter(CATALOG.get("openai"))
    candidate = ModelDescriptor("openai", "gpt-5-nano", "gpt-5-nano")
    stream = FakeStream(
        [
            {"model": "gpt-5-nano-2025", "choices": [{"delta": {"content": "Let me look"}}]},
            {
                "choices": [
                    {"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "read", "arguments": '{"pa'}}]}}
                ]
            },
            {
                "choices": [
                    {
                        "delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'th": "a.txt"}'}}]},
                        "finish_reason": "tool_calls",
                    }
                ]
            },
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 7}},
        ]
    )
    captured = {}
    options = StreamOptions(tools=[ToolSpec(name="read", description="Read a file")], temperature=0.2)

    streamed = _collect(
        adapter.open_stream(_openai_client(stream, captured), candidate, [{"role": "user", "content": "hi"}], options)
    )
    events = _without_heartbeats(streamed)

    assert len(streamed) - len(events) == 3
    assert [e.type for e in events] == ["text-delta", "tool-call", "step-finish"]
    assert events[1].tool_call_id == "call_1"
    assert json.loads(events[1].arguments) == {"path": "a.txt"}
    assert events[2].finish_reason == "tool_calls"
    assert events[2].usage == {"prompt_tokens": 5, "completion_tokens": 7}
    assert events[2].model == "gpt-5-nano-2025"
    assert stream.closed
    assert captured["stream"] is True
    assert captured["stream_options"] == {"include_usage": True}
    assert captured["tools"][0]["function"]["name"] == "read"
    assert captured["temperature"] == 0.2


def test_openai_adapter_without_finish_or_usage_emits_no_step_finish():
    adapter = OpenAIChatAdapter(CATALOG.get("kilo"))
    candidate = ModelDescriptor("kilo", "glm-5-free", "z-ai/glm-5:free")
    events = _collect(adapter.open_stream(_openai_client(FakeStream([]), {}), candidate, [], StreamOptions()))
    assert events == []


def test_openai_convert_messages_round_trips_tool_turns():
    adapter = OpenAIChatAdapter(CATALOG.get("openai"))
    converted = adapter.convert_messages(
        [
            {"role": "system", "content": "be brief"},
            {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "name": "read", "arguments": {"path": "x"}}]},
            {"role": "tool", "tool_call_id": "c1", "name": "read", "content": "data"},
        ]
    )
    assert converted[1]["tool_calls"][0]["function"]["arguments"] == '{"path": "x"}'
    assert converted[2] == {"role": "tool", "tool_call_id": "c1", "content": "data"}


def test_anthropic_adapter_maps_message_events():
    adapter = AnthropicMessagesAdapter(CATALOG.get("anthropic"))
    candidate = ModelDescriptor("anthropic", "claude-sonnet-4-5", "claude-sonnet-4-5")
    stream = FakeStream(
        [
            {"type": "message_start", "message": {"model": "claude-sonnet-4-5-20250929", "usage": {"input_tokens": 20, "output_tokens": 1}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Checking"}},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_1", "name": "read"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "b"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 15}},
            {"type": "message_stop"},
        ]
    )
    captured = {}
    conversation = [{"role": "system", "content": "sys"}, {"role": "user", "content": "go"}]

    streamed = _collect(adapter.open_stream(_anthropic_client(stream, captured), candidate, conversation, StreamOptions()))
    events = _without_heartbeats(streamed)

    assert len(streamed) - len(events) == 5
    assert [e.type for e in events] == ["text-delta", "tool-call", "step-finish"]
    assert events[1].tool_call_id == "tu_1"
    assert json.loads(events[1].arguments) == {"path": "b"}
    assert events[2].finish_reason == "tool_use"
    assert events[2].usage == {"input_tokens": 20, "output_tokens": 15}
    assert captured["system"] == "sys"
    assert captured["messages"] == [{"role": "user", "content": [{"type": "text", "text": "go"}]}]
    assert captured["max_tokens"] == 4096


def test_anthropic_stream_error_event_is_typed():
    adapter = AnthropicMessagesAdapter(CATALOG.get("anthropic"))
    candidate = ModelDescriptor("anthropic", "claude-haiku-4-5", "claude-haiku-4-5")
    stream = FakeStream([{"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}])

    events = _collect(adapter.open_stream(_anthropic_client(stream, {}), candidate, [], StreamOptions()))

    assert events[0].type == "error"
    assert isinstance(events[0].error, ProviderError)
    assert events[0].error.kind == ErrorKind.SERVER_ERROR
    assert events[0].error.retryable


def test_anthropic_groups_consecutive_tool_results():
    adapter = AnthropicMessagesAdapter(CATALOG.get("anthropic"))
    _, messages = adapter.convert_messages(
        [
            {"role": "assistant", "content": None, "tool_calls": [{"id": "a", "name": "x", "arguments": "{}"}, {"id": "b", "name": "y", "arguments": "{}"}]},
            {"role": "tool", "tool_call_id": "a", "content": "1"},
            {"role": "tool", "tool_call_id": "b", "content": "2"},
        ]
    )
    assert [block["type"] for block in messages[0]["content"]] == ["tool_use", "tool_use"]
    assert messages[1]["role"] == "user"
    assert [block["tool_use_id"] for block in messages[1]["content"]] == ["a", "b"]
    assert "_tool_results" not in messages[1]


def test_echo_adapter_replays_last_user_message():
    adapter = EchoAdapter(CATALOG.get("echo"))
    candidate = ModelDescriptor("echo", "echo", "echo")
    conversation = [{"role": "user", "content": "first"}, {"role": "assistant", "content": "x"}, {"role": "user", "content": "ping pong"}]
    events = _collect(adapter.open_stream(None, candidate, conversation, StreamOptions()))
    assert events[0].text == "ping pong"
    assert events[-1].type == "step-finish"
    assert events[-1].finish_reason == "stop"


def test_builtin_registry_covers_catalog_runtimes():
    runtimes = set(provider_registry.runtime_ids())
    for pid in CATALOG.provider_ids():
        assert CATALOG.get(pid).runtime_id in runtimes


def test_registry_rejects_unknown_runtime_and_bad_classes():
    registry = ProviderRuntimeRegistry()
    with pytest.raises(FatalProviderError) as excinfo:
        registry.create_adapter(ProviderInfo(id="x", label="x", runtime_id="missing"))
    assert excinfo.value.kind == ErrorKind.PROVIDER_INIT
    with pytest.raises(TypeError):
        registry.register_runtime("bad", dict)


def _counting_registry(fail=False):
    created = []

    class JsonBackedAdapter(ProviderAdapter):
        runtime_id = "json_backed"
        sdk_module = "json"
        sdk_package = "json"

        def create_client(self, credentials, sdk=None):
            if fail:
                raise ValueError("base_url must be absolute")
            created.append((credentials.api_key, sdk.__name__))
            return SimpleNamespace(key=credentials.api_key)

    registry = ProviderRuntimeRegistry()
    registry.register_runtime("json_backed", JsonBackedAdapter)
    return registry, created


def test_client_factory_caches_per_credentials():
    registry, created = _counting_registry()
    factory = ProviderClientFactory(registry=registry, installer=PackageInstaller())
    provider = ProviderInfo(id="p", label="p", runtime_id="json_backed")

    async def main():
        first = await factory.get_client(provider, Credentials("p", "k1", "env"))
        again = await factory.get_client(provider, Credentials("p", "k1", "env"))
        other = await factory.get_client(provider, Credentials("p", "k2", "env"))
        factory.invalidate("p")
        fresh = await factory.get_client(provider, Credentials("p", "k1", "env"))
        return first, again, other, fresh

    first, again, other, fresh = asyncio.run(main())

    assert first is again
    assert other is not first
    assert fresh is not first
    assert created == [("k1", "json"), ("k2", "json"), ("k1", "json")]


def test_client_factory_wraps_constructor_errors():
    registry, _ = _counting_registry(fail=True)
    factory = ProviderClientFactory(registry=registry, installer=PackageInstaller())
    provider = ProviderInfo(id="p", label="p", runtime_id="json_backed")

    with pytest.raises(FatalProviderError) as excinfo:
        asyncio.run(factory.get_client(provider, Credentials("p", "k", "env")))

    assert excinfo.value.kind == ErrorKind.PROVIDER_INIT
    assert "base_url must be absolute" in excinfo.value.message
