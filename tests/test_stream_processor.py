import asyncio
import json
from types import SimpleNamespace

import pytest

from relay_agent.auth import Credentials, CredentialStore
from relay_agent.config import StreamConfig
from relay_agent.errors import (
    ErrorKind,
    FatalProviderError,
    StepAnomalyError,
    StepTimeoutError,
    StreamStalledError,
)
from relay_agent.events import EventEmitter
from relay_agent.provider_catalog import ProviderCatalog
from relay_agent.provider_ir import StreamEvent
from relay_agent.provider_routing import ModelDescriptor
from relay_agent.provider_runtime import (
    AnthropicMessagesAdapter,
    OpenAIChatAdapter,
    ProviderClientFactory,
    ProviderRuntimeRegistry,
)
from relay_agent.state.session_state import FinishReason
from relay_agent.stream_processor import StepState, StreamingStepProcessor

from provider_fakes import FakeStatusError, Pause, finish, scripted_registry

KILO = ModelDescriptor("kilo", "glm-5-free", "z-ai/glm-5:free")
ANTHROPIC = ModelDescriptor("anthropic", "claude-sonnet-4-5", "claude-sonnet-4-5")
CONVERSATION = [{"role": "user", "content": "hello"}]


def _processor(plan, *, chunk_ms=120_000, step_ms=600_000, refreshers=None):
    registry, trace = scripted_registry(plan)
    catalog = ProviderCatalog.default().apply_overrides({pid: {"runtime": "scripted"} for pid in plan})
    processor = StreamingStepProcessor(
        catalog=catalog,
        clients=ProviderClientFactory(registry=registry),
        credentials=CredentialStore(catalog, environ={}, refreshers=refreshers),
        stream_config=StreamConfig(chunk_timeout_ms=chunk_ms, step_timeout_ms=step_ms),
    )
    return processor, trace


def _run(processor, candidate=KILO, emitter=None):
    return asyncio.run(processor.run_step(candidate, CONVERSATION, emitter=emitter))


def test_step_outcome_collects_text_usage_and_metadata():
    processor, _ = _processor(
        {
            "kilo": [
                [
                    StreamEvent.reasoning_delta("thinking"),
                    StreamEvent.text_delta("Hel"),
                    StreamEvent.text_delta("lo"),
                    finish("stop", {"prompt_tokens": 9, "completion_tokens": 2}, model="z-ai/glm-5"),
                ]
            ]
        }
    )
    emitter = EventEmitter("ses_test")

    outcome = _run(processor, emitter=emitter)

    assert outcome.finish_reason == FinishReason.STOP
    assert outcome.text == "Hello"
    assert outcome.reasoning == "thinking"
    assert outcome.usage.input == 9 and outcome.usage.output == 2
    assert outcome.requested_model_id == "glm-5-free"
    assert outcome.responded_model_id == "z-ai/glm-5"
    assert outcome.cost == 0.0
    assert outcome.first_chunk_latency is not None
    assert outcome.raw_metadata["raw_finish_reason"] == "stop"
    assert outcome.raw_metadata["step_finish_received"] is True
    assert processor.state == StepState.FINISHED
    assert [e["type"] for e in emitter.events] == ["reasoning-delta", "text-delta", "text-delta"]


def test_unknown_reason_with_zero_usage_is_promoted_to_anomaly():
    processor, _ = _processor({"kilo": [[finish(None, {"input_tokens": 0}, model="z-ai/glm-5:free")]]})

    with pytest.raises(StepAnomalyError) as excinfo:
        _run(processor)

    err = excinfo.value
    assert err.retryable
    assert err.kind == ErrorKind.EMPTY_RESPONSE
    assert err.model_id == "glm-5-free"
    assert err.responded_model_id == "z-ai/glm-5:free"
    assert processor.state == StepState.FAILED


def test_stream_without_step_finish_is_an_anomaly():
    processor, _ = _processor({"kilo": [[]]})
    with pytest.raises(StepAnomalyError) as excinfo:
        _run(processor)
    assert excinfo.value.details["step_finish_received"] is False


def test_unknown_reason_with_usage_is_returned_for_the_loop_to_judge():
    processor, _ = _processor({"kilo": [[finish("length", {"output_tokens": 3})]]})
    outcome = _run(processor)
    assert outcome.finish_reason == FinishReason.UNKNOWN
    assert outcome.raw_metadata["raw_finish_reason"] == "length"


def test_chunk_timer_marks_stream_stalled():
    processor, trace = _processor({"kilo": [[StreamEvent.text_delta("a"), Pause(1.0), finish()]]}, chunk_ms=30)

    with pytest.raises(StreamStalledError) as excinfo:
        _run(processor)

    assert excinfo.value.kind == ErrorKind.CONNECTION_STALLED
    assert excinfo.value.retryable
    assert processor.state == StepState.STALLED
    assert trace.closed == ["kilo/glm-5-free"]


def test_step_timer_fires_even_while_chunks_keep_arriving():
    script = []
    for _ in range(50):
        script.extend([StreamEvent.text_delta("."), Pause(0.02)])
    script.append(finish())
    processor, trace = _processor({"kilo": [script]}, chunk_ms=200, step_ms=150)

    with pytest.raises(StepTimeoutError) as excinfo:
        _run(processor)

    assert excinfo.value.kind == ErrorKind.TIMEOUT
    assert processor.state == StepState.FAILED
    assert trace.closed == ["kilo/glm-5-free"]


def test_provider_error_event_is_classified():
    processor, _ = _processor(
        {"kilo": [[StreamEvent.text_delta("x"), StreamEvent.error_event(FakeStatusError(502, "bad gateway"))]]}
    )
    with pytest.raises(Exception) as excinfo:
        _run(processor)
    assert excinfo.value.kind == ErrorKind.SERVER_ERROR
    assert excinfo.value.provider_id == "kilo"


def test_anthropic_metadata_keeps_cached_input_separate():
    usage = {"input_tokens": 100, "output_tokens": 10, "cache_read_input_tokens": 50}
    processor, _ = _processor({"anthropic": [[finish("end_turn", usage)]]})

    outcome = _run(processor, candidate=ANTHROPIC)

    assert outcome.finish_reason == FinishReason.END_TURN
    assert outcome.usage.input == 100
    assert outcome.usage.cache_read == 50
    assert outcome.cost > 0


def test_auth_failure_refreshes_credentials_once():
    calls = []

    async def refresher(current):
        calls.append(current.provider_id)
        return Credentials(current.provider_id, "fresh-token", "refresh", refreshable=True)

    processor, trace = _processor(
        {"kilo": [[FakeStatusError(401, "token expired")], [finish()]]},
        refreshers={"kilo": refresher},
    )

    outcome = _run(processor)

    assert outcome.finish_reason == FinishReason.STOP
    assert calls == ["kilo"]
    assert len(trace.opened) == 2


def test_auth_failure_after_refresh_is_fatal():
    async def refresher(current):
        return Credentials(current.provider_id, "still-bad", "refresh", refreshable=True)

    processor, trace = _processor(
        {"kilo": [[FakeStatusError(403, "forbidden")]]},
        refreshers={"kilo": refresher},
    )

    with pytest.raises(FatalProviderError) as excinfo:
        _run(processor)

    assert excinfo.value.kind == ErrorKind.AUTH
    assert len(trace.opened) == 2


def test_tool_calls_and_provider_results_are_collected():
    processor, _ = _processor(
        {
            "kilo": [
                [
                    StreamEvent.tool_call("c1", "read_file", {"path": "a.txt"}),
                    StreamEvent.tool_call("c2", "web_search", {"q": "x"}, provider_executed=True),
                    StreamEvent.tool_result("c2", {"hits": 0}, name="web_search"),
                    finish("tool_calls"),
                ]
            ]
        }
    )

    outcome = _run(processor)

    assert outcome.finish_reason == FinishReason.TOOL_CALLS
    assert [c.id for c in outcome.tool_calls] == ["c1", "c2"]
    assert outcome.tool_calls[1].provider_executed
    assert outcome.tool_results[0].tool_call_id == "c2"
    assert outcome.tool_results[0].output == "{'hits': 0}"


class PacedStream:
    """SDK-style async stream that waits ``gap`` seconds before each chunk."""

    def __init__(self, chunks, gap):
        self.chunks = list(chunks)
        self.gap = gap
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            await asyncio.sleep(self.gap)
            yield chunk

    async def close(self):
        self.closed = True


def _sdk_processor(adapter_cls, provider_id, client, *, chunk_ms):
    class PacedAdapter(adapter_cls):
        sdk_module = None
        requires_api_key = False

        def create_client(self, credentials, sdk=None):
            return client

    registry = ProviderRuntimeRegistry()
    registry.register_runtime("paced", PacedAdapter)
    catalog = ProviderCatalog.default().apply_overrides({provider_id: {"runtime": "paced"}})
    return StreamingStepProcessor(
        catalog=catalog,
        clients=ProviderClientFactory(registry=registry),
        credentials=CredentialStore(catalog, environ={}),
        stream_config=StreamConfig(chunk_timeout_ms=chunk_ms, step_timeout_ms=600_000),
    )


def _openai_client(stream):
    async def create(**request):
        return stream

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def _anthropic_client(stream):
    async def create(**request):
        return stream

    return SimpleNamespace(messages=SimpleNamespace(create=create))


TOOL_ARGS = '{"path": "notes/a-rather-long-file-name.txt"}'


def test_openai_tool_argument_chunks_keep_the_chunk_timer_alive():
    pieces = [TOOL_ARGS[i : i + 5] for i in range(0, len(TOOL_ARGS), 5)]
    chunks = [{"model": "gpt-5", "choices": [{"delta": {"role": "assistant"}}]}]
    chunks.append(
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": ""}}]}}]}
    )
    for piece in pieces:
        chunks.append({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": piece}}]}}]})
    chunks.append({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
    chunks.append({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 30}})
    stream = PacedStream(chunks, gap=0.05)
    processor = _sdk_processor(OpenAIChatAdapter, "openai", _openai_client(stream), chunk_ms=200)
    emitter = EventEmitter("ses_paced")

    outcome = asyncio.run(
        processor.run_step(ModelDescriptor("openai", "gpt-5", "gpt-5"), CONVERSATION, emitter=emitter)
    )

    assert len(chunks) * 0.05 > 0.2
    assert outcome.finish_reason == FinishReason.TOOL_CALLS
    assert json.loads(outcome.tool_calls[0].arguments) == {"path": "notes/a-rather-long-file-name.txt"}
    assert outcome.usage.output == 30
    assert processor.state == StepState.FINISHED
    assert stream.closed
    assert [e["type"] for e in emitter.events] == ["tool-call"]


def test_anthropic_input_json_chunks_keep_the_chunk_timer_alive():
    chunks = [
        {"type": "message_start", "message": {"model": "claude-sonnet-4-5", "usage": {"input_tokens": 40}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "tu_1", "name": "read_file"}},
    ]
    for i in range(0, len(TOOL_ARGS), 5):
        chunks.append(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": TOOL_ARGS[i : i + 5]}}
        )
    chunks += [
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 22}},
        {"type": "message_stop"},
    ]
    processor = _sdk_processor(AnthropicMessagesAdapter, "anthropic", _anthropic_client(PacedStream(chunks, gap=0.05)), chunk_ms=200)

    outcome = asyncio.run(processor.run_step(ANTHROPIC, CONVERSATION))

    assert outcome.finish_reason == FinishReason.TOOL_CALLS
    assert outcome.tool_calls[0].id == "tu_1"
    assert outcome.usage.input == 40 and outcome.usage.output == 22


def test_openai_stream_that_goes_quiet_after_a_role_chunk_still_stalls():
    class QuietStream(PacedStream):
        async def _iterate(self):
            yield {"model": "gpt-5", "choices": [{"delta": {"role": "assistant"}}]}
            await asyncio.sleep(5)
            yield {"choices": [{"delta": {"content": "late"}}]}

    stream = QuietStream([], gap=0)
    processor = _sdk_processor(OpenAIChatAdapter, "openai", _openai_client(stream), chunk_ms=50)

    with pytest.raises(StreamStalledError):
        asyncio.run(processor.run_step(ModelDescriptor("openai", "gpt-5", "gpt-5"), CONVERSATION))

    assert processor.state == StepState.STALLED
    assert stream.closed
