import asyncio

import pytest

from relay_agent.cancellation import CancellationToken
from relay_agent.errors import SessionCancelled
from relay_agent.events import EventEmitter


def test_timestamps_strictly_increase_with_a_frozen_clock():
    emitter = EventEmitter("ses_1", clock=lambda: 1_700_000_000.0)
    stamps = [emitter.emit("text-delta", text=str(i))["timestamp"] for i in range(5)]
    assert stamps == [1_700_000_000_000 + i for i in range(5)]


def test_timestamps_never_go_backwards():
    ticks = iter([10.0, 9.0, 9.5, 11.0])
    emitter = EventEmitter("ses_1", clock=lambda: next(ticks))
    stamps = [emitter.emit("step-start")["timestamp"] for _ in range(4)]
    assert stamps == [10_000, 10_001, 10_002, 11_000]


def test_events_carry_session_id_and_reach_sinks():
    seen = []
    emitter = EventEmitter("ses_42", [seen.append])
    event = emitter.emit("retry", delay_ms=100)
    assert event["session_id"] == "ses_42"
    assert seen == [event]
    assert emitter.of_type("retry") == [event]


def test_unknown_event_type_is_rejected():
    with pytest.raises(ValueError):
        EventEmitter("ses").emit("made-up")


def test_token_run_returns_result():
    async def main():
        token = CancellationToken()

        async def work():
            await asyncio.sleep(0)
            return 7

        return await token.run(work())

    assert asyncio.run(main()) == 7


def test_cancel_aborts_pending_work():
    finished = []

    async def main():
        token = CancellationToken()

        async def slow():
            try:
                await asyncio.sleep(3600)
            finally:
                finished.append("cleaned up")

        async def trigger():
            await asyncio.sleep(0.01)
            token.cancel("stop now")

        asyncio.ensure_future(trigger())
        await token.run(slow())

    with pytest.raises(SessionCancelled) as excinfo:
        asyncio.run(asyncio.wait_for(main(), timeout=5))

    assert excinfo.value.message == "stop now"
    assert finished == ["cleaned up"]


def test_shutdown_is_softer_than_cancel():
    async def main():
        token = CancellationToken()
        token.request_shutdown("SIGTERM")
        assert token.shutdown_requested
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel("SIGINT twice")
        assert token.cancelled
        assert token.reason == "SIGINT twice"
        with pytest.raises(SessionCancelled):
            token.raise_if_cancelled()

    asyncio.run(main())


def test_shutdown_aborts_waits_but_not_steps():
    finished = []

    async def main():
        token = CancellationToken()

        async def wait_out_backoff():
            try:
                await asyncio.sleep(3600)
            finally:
                finished.append("wait aborted")

        async def step():
            await asyncio.sleep(0.02)
            return "step done"

        async def trigger():
            await asyncio.sleep(0.01)
            token.request_shutdown("SIGTERM")

        asyncio.ensure_future(trigger())
        assert await token.run(step()) == "step done"

        with pytest.raises(SessionCancelled):
            await token.run(wait_out_backoff(), include_shutdown=True)
        with pytest.raises(SessionCancelled):
            token.raise_if_shutdown()

    asyncio.run(asyncio.wait_for(main(), timeout=5))
    assert finished == []


def test_shutdown_interrupts_a_wait_already_in_progress():
    async def main():
        token = CancellationToken()

        async def trigger():
            await asyncio.sleep(0.01)
            token.request_shutdown("SIGTERM")

        asyncio.ensure_future(trigger())
        await token.run(asyncio.sleep(3600), include_shutdown=True)

    with pytest.raises(SessionCancelled) as excinfo:
        asyncio.run(asyncio.wait_for(main(), timeout=5))
    assert excinfo.value.message == "SIGTERM"
