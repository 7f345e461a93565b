"""
Tests for the retry / wait primitives.

Timing is checked against trio's MockClock, so every assertion about
elapsed time is exact and the tests finish instantly.
"""

import pytest
import trio
import trio.testing

from ipfs_interop.errors import NodeAPIError, NotFoundError, PropagationTimeout
from ipfs_interop.polling import retry, wait_until


def run_mocked(fn, *args):
    return trio.run(fn, *args, clock=trio.testing.MockClock(autojump_threshold=0))


class Flaky:
    """Fails the first `failures` calls, then returns "ok"."""

    def __init__(self, failures: int, error=NotFoundError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"fail {self.calls}")
        return "ok"


# ═══════════════════════════════════════════════════════════════════════════
#  retry()
# ═══════════════════════════════════════════════════════════════════════════

class TestRetry:

    @pytest.mark.parametrize("k", [1, 2, 5])
    def test_succeeds_on_attempt_k_with_k_calls(self, k):
        action = Flaky(failures=k - 1)

        async def main():
            start = trio.current_time()
            result = await retry(action, attempts=5, interval=2.0)
            return result, trio.current_time() - start

        result, elapsed = run_mocked(main)
        assert result == "ok"
        assert action.calls == k
        assert elapsed == pytest.approx((k - 1) * 2.0)

    def test_immediate_success_does_not_wait(self):
        action = Flaky(failures=0)

        async def main():
            start = trio.current_time()
            await retry(action, attempts=3, interval=10.0)
            return trio.current_time() - start

        assert run_mocked(main) == 0
        assert action.calls == 1

    def test_exhaustion_raises_last_error(self):
        action = Flaky(failures=100)

        async def main():
            await retry(action, attempts=5, interval=2.0)

        with pytest.raises(NotFoundError, match="fail 5"):
            run_mocked(main)
        assert action.calls == 5

    def test_exhaustion_takes_attempts_minus_one_intervals(self):
        action = Flaky(failures=100)
        elapsed = []

        async def main():
            start = trio.current_time()
            try:
                await retry(action, attempts=4, interval=0.5)
            except NotFoundError:
                elapsed.append(trio.current_time() - start)

        run_mocked(main)
        assert elapsed == [pytest.approx(1.5)]

    def test_unlisted_errors_are_not_retried(self):
        action = Flaky(failures=3, error=RuntimeError)

        async def main():
            await retry(action, attempts=5, interval=1.0, retry_on=NodeAPIError)

        with pytest.raises(RuntimeError):
            run_mocked(main)
        assert action.calls == 1

    def test_retry_on_subclass(self):
        action = Flaky(failures=2, error=NotFoundError)

        async def main():
            return await retry(action, attempts=3, interval=1.0, retry_on=NodeAPIError)

        assert run_mocked(main) == "ok"
        assert action.calls == 3

    @pytest.mark.parametrize("attempts", [0, -1])
    def test_attempts_must_be_positive(self, attempts):
        async def main():
            await retry(Flaky(0), attempts=attempts)

        with pytest.raises(ValueError):
            run_mocked(main)


# ═══════════════════════════════════════════════════════════════════════════
#  wait_until()
# ═══════════════════════════════════════════════════════════════════════════

class TestWaitUntil:

    def test_returns_when_predicate_flips(self):
        state = {"received": False}

        async def flip_after(delay):
            await trio.sleep(delay)
            state["received"] = True

        async def main():
            start = trio.current_time()
            async with trio.open_nursery() as nursery:
                nursery.start_soon(flip_after, 3.0)
                await wait_until(lambda: state["received"], timeout=10.0, interval=0.05)
            return trio.current_time() - start

        elapsed = run_mocked(main)
        assert 3.0 <= elapsed < 3.1

    def test_times_out_at_timeout(self):
        elapsed = []

        async def main():
            start = trio.current_time()
            with pytest.raises(PropagationTimeout) as info:
                await wait_until(lambda: False, timeout=10.0, interval=0.05, label="never")
            elapsed.append(trio.current_time() - start)
            return info.value

        error = run_mocked(main)
        assert 10.0 <= elapsed[0] < 10.1
        assert error.timeout == 10.0
        assert "never" in str(error)
        assert isinstance(error, TimeoutError)

    def test_true_predicate_returns_immediately(self):
        calls = []

        def predicate():
            calls.append(1)
            return True

        async def main():
            start = trio.current_time()
            await wait_until(predicate, timeout=5.0)
            return trio.current_time() - start

        assert run_mocked(main) == 0
        assert len(calls) == 1

    def test_polls_with_a_delay(self):
        calls = []

        def predicate():
            calls.append(trio.current_time())
            return False

        async def main():
            with pytest.raises(PropagationTimeout):
                await wait_until(predicate, timeout=1.0, interval=0.25)

        run_mocked(main)
        # 0, 0.25, 0.5, 0.75, 1.0
        assert len(calls) == 5

    @pytest.mark.parametrize("interval", [0, -0.1])
    def test_interval_must_be_positive(self, interval):
        async def main():
            await wait_until(lambda: True, interval=interval)

        with pytest.raises(ValueError):
            run_mocked(main)
