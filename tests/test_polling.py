import pytest

from wonbiz.polling import PollTimeout, RetryPolicy


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.mark.asyncio
async def test_poll_returns_first_terminal_value():
    sleep = FakeSleep()
    states = iter(["queued", "processing", "completed"])

    async def fetch():
        return next(states)

    policy = RetryPolicy(interval=5.0, max_attempts=60, sleep=sleep)
    assert await policy.poll(fetch, lambda s: s == "completed") == "completed"
    assert sleep.calls == [5.0, 5.0]


@pytest.mark.asyncio
async def test_poll_gives_up_after_attempt_budget():
    sleep = FakeSleep()
    fetches = []

    async def fetch():
        fetches.append(1)
        return "processing"

    policy = RetryPolicy(interval=5.0, max_attempts=3, sleep=sleep)
    with pytest.raises(PollTimeout, match="3 attempts"):
        await policy.poll(fetch, lambda s: s == "completed")
    assert len(fetches) == 3
    assert sleep.calls == [5.0, 5.0]
