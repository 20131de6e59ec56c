import pytest

from shaderloop.utils.retry import compute_backoff, poll_until


def test_compute_backoff_grows_with_attempts():
    for attempt in range(1, 4):
        delay = compute_backoff(attempt, base=2.0, jitter=0.5)
        assert 2.0**attempt <= delay <= 2.0**attempt + 0.5


@pytest.mark.asyncio
async def test_poll_until_returns_first_value():
    answers = [None, None, "code"]

    async def check():
        return answers.pop(0)

    assert await poll_until(check, attempts=5, delay=0) == "code"
    assert answers == []


@pytest.mark.asyncio
async def test_poll_until_gives_up():
    calls = []

    async def check():
        calls.append(1)
        return None

    assert await poll_until(check, attempts=3, delay=0) is None
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_poll_until_propagates_check_errors():
    async def check():
        raise LookupError("gone")

    with pytest.raises(LookupError):
        await poll_until(check, attempts=3, delay=0)
