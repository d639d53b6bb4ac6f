import random

import pytest

import keelson.llm.transport as transport_module
from keelson.exceptions import TransportError
from keelson.llm.transport import RetryingTransport


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _failing(errors: list[TransportError], result: str = "ok"):
    calls = {"count": 0}

    async def attempt() -> str:
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return attempt, calls


@pytest.mark.asyncio
async def test_retryable_errors_make_three_attempts_then_raise():
    sleep = FakeSleep()
    transport = RetryingTransport(max_retries=2, initial_delay=1.0, jitter=0.3, sleep=sleep)
    attempt, calls = _failing([TransportError("t", kind="timeout") for _ in range(5)])

    with pytest.raises(TransportError) as exc_info:
        await transport.call(attempt)

    assert calls["count"] == 3
    assert exc_info.value.attempts == 3
    assert str(exc_info.value) == "Failed to complete request after 3 attempts. Original error: t"
    assert len(sleep.delays) == 2
    assert 1.0 <= sleep.delays[0] <= 1.3
    assert 2.0 <= sleep.delays[1] <= 2.6


@pytest.mark.asyncio
async def test_non_retryable_error_is_not_retried():
    sleep = FakeSleep()
    transport = RetryingTransport(sleep=sleep)
    attempt, calls = _failing([TransportError("bad request", kind="status", status_code=400)])

    with pytest.raises(TransportError) as exc_info:
        await transport.call(attempt)

    assert calls["count"] == 1
    assert sleep.delays == []
    assert str(exc_info.value) == "bad request"


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    sleep = FakeSleep()
    transport = RetryingTransport(sleep=sleep)
    attempt, calls = _failing([TransportError("overloaded", kind="status", status_code=529)], result="done")

    assert await transport.call(attempt) == "done"
    assert calls["count"] == 2
    assert len(sleep.delays) == 1


def test_delay_grows_exponentially_with_bounded_jitter():
    transport = RetryingTransport(initial_delay=1.0, jitter=0.3, rng=random.Random(7))

    for retry_index in range(4):
        base = 2 ** retry_index
        delay = transport.compute_delay(retry_index)
        assert base <= delay <= base * 1.3


def test_zero_jitter_is_deterministic():
    transport = RetryingTransport(initial_delay=0.5, jitter=0.0)

    assert transport.compute_delay(0) == 0.5
    assert transport.compute_delay(2) == 2.0


class RecordingLog:
    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    def warning(self, event: str, **kw) -> None:
        self.events.append(("warning", event, kw))

    def error(self, event: str, **kw) -> None:
        self.events.append(("error", event, kw))


@pytest.mark.asyncio
async def test_each_retry_is_logged_with_cause_and_delay(monkeypatch):
    recorder = RecordingLog()
    monkeypatch.setattr(transport_module, "log", recorder)
    transport = RetryingTransport(max_retries=2, sleep=FakeSleep())
    attempt, _ = _failing([TransportError("t", kind="timeout") for _ in range(3)])

    with pytest.raises(TransportError):
        await transport.call(attempt)

    retries = [kw for level, event, kw in recorder.events if event == "Retrying provider call"]
    assert [kw["retry"] for kw in retries] == ["1/2", "2/2"]
    assert all(kw["cause"] == "t" and kw["delay"] > 0 for kw in retries)
    assert recorder.events[-1][:2] == ("error", "Provider call exhausted retries")
    assert recorder.events[-1][2]["attempts"] == 3
