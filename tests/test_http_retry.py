import pytest

from http_retry import backoff_seconds, call_with_retries, parse_retry_after


class Flaky(Exception):
    def __init__(self, retry_after=None):
        super().__init__("flaky")
        self.retry_after = retry_after


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, s):
        self.calls.append(s)


@pytest.mark.asyncio
async def test_retry_after_is_honoured_verbatim():
    sleeps = Sleeps()
    attempts = {"n": 0}

    async def fn():
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise Flaky(retry_after=13)
        return "ok"

    assert await call_with_retries(fn, retry_on=(Flaky,), attempts=3, sleep=sleeps) == "ok"
    assert sleeps.calls == [13.0]


@pytest.mark.asyncio
async def test_exponential_backoff_and_give_up(monkeypatch):
    monkeypatch.setenv("HTTP_RETRY_BASE_SLEEP_SECS", "2")
    monkeypatch.setenv("HTTP_RETRY_MAX_SLEEP_SECS", "30")
    sleeps = Sleeps()

    async def fn():
        raise Flaky()

    with pytest.raises(Flaky):
        await call_with_retries(fn, retry_on=(Flaky,), attempts=3, sleep=sleeps)
    assert sleeps.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    sleeps = Sleeps()

    async def fn():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await call_with_retries(fn, retry_on=(Flaky,), attempts=3, sleep=sleeps)
    assert sleeps.calls == []


def test_backoff_is_capped(monkeypatch):
    monkeypatch.setenv("HTTP_RETRY_BASE_SLEEP_SECS", "2")
    monkeypatch.setenv("HTTP_RETRY_MAX_SLEEP_SECS", "30")
    assert backoff_seconds(10) == 30.0


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after(-1) is None
