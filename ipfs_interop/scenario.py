"""
scenario.py – A small ordered-step executor for cross-node test cases.

A Scenario is a named list of steps.  Each step is one node operation, one
wait, or one assertion; it receives the `observed` mapping (step label →
captured return value) so later steps can use what earlier ones produced.

    scenario = (
        Scenario("go -> js content")
        .step("add", lambda obs: a.add_content(data))
        .step("fetch", lambda obs: b.fetch_content(obs["add"].hash))
        .expect("bytes match", data, lambda obs: obs["fetch"])
    )
    result = await ScenarioRunner().run(scenario)

Execution is fail-fast: the first failing step ends the scenario and the
remaining steps are skipped.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

import trio

from .config import CONDITION_TIMEOUT, SUBSCRIBE_ATTEMPTS, SUBSCRIBE_INTERVAL
from .errors import AssertionMismatch, SetupError
from .logs import setup_logging
from . import polling

logger = setup_logging("scenario")

Observed = dict[str, Any]
ErrorTypes = type[BaseException] | tuple[type[BaseException], ...]


@dataclass
class Step:
    label: str
    action: Callable[[Observed], Awaitable[Any]]
    expect_error: ErrorTypes | None = None


@dataclass
class ScenarioResult:
    name: str
    success: bool
    observed: Observed = field(default_factory=dict)
    error: str | None = None
    failed_step: str | None = None
    exception: Exception | None = None
    duration: float = 0.0

    def raise_for_failure(self) -> None:
        """Re-raise the exception that failed the scenario, if any."""
        if self.exception is not None:
            raise self.exception
        if not self.success:
            raise AssertionError(self.error or f"scenario {self.name!r} failed")


class Scenario:
    def __init__(self, name: str):
        self.name = name
        self.steps: list[Step] = []
        self._finalizers: list[Callable[[Observed], Any]] = []

    def __repr__(self) -> str:
        return f"<Scenario {self.name!r} ({len(self.steps)} steps)>"

    def step(self, label: str, action: Callable[[Observed], Awaitable[Any]],
             expect_error: ErrorTypes | None = None) -> "Scenario":
        """
        Add a node operation.  With *expect_error* the step passes only if
        the action raises one of those errors, and the error is recorded
        as the observed value.
        """
        if any(s.label == label for s in self.steps):
            raise ValueError(f"duplicate step label {label!r}")
        self.steps.append(Step(label, action, expect_error))
        return self

    def expect(self, label: str, expected, actual: Callable[[Observed], Any]) -> "Scenario":
        """Assert ``actual(observed) == expected``; *expected* may also be a callable of observed."""

        async def check(observed: Observed):
            want = expected(observed) if callable(expected) else expected
            got = actual(observed)
            if got != want:
                raise AssertionMismatch(label, want, got)
            return got

        return self.step(label, check)

    def wait_until(self, label: str, predicate: Callable[[Observed], bool],
                   timeout: float = CONDITION_TIMEOUT) -> "Scenario":
        async def wait(observed: Observed):
            await polling.wait_until(lambda: predicate(observed), timeout=timeout, label=label)
            return True

        return self.step(label, wait)

    def retry(self, label: str, action: Callable[[Observed], Awaitable[Any]],
              attempts: int = SUBSCRIBE_ATTEMPTS, interval: float = SUBSCRIBE_INTERVAL,
              retry_on: ErrorTypes = Exception) -> "Scenario":
        async def attempt(observed: Observed):
            return await polling.retry(lambda: action(observed), attempts=attempts,
                                       interval=interval, retry_on=retry_on, label=label)

        return self.step(label, attempt)

    def on_finish(self, callback: Callable[[Observed], Any]) -> "Scenario":
        """Run *callback(observed)* after the scenario, whether it passed or not."""
        self._finalizers.append(callback)
        return self


class ScenarioRunner:
    """Runs scenarios one at a time and turns their outcome into ScenarioResults."""

    async def run(self, scenario: Scenario) -> ScenarioResult:
        observed: Observed = {}
        started = trio.current_time()
        logger.info(f"▶ {scenario.name}")

        result = None
        try:
            for step in scenario.steps:
                failure = await self._run_step(step, observed)
                if failure is not None:
                    logger.error(f"✗ {scenario.name} [{step.label}]: {failure}")
                    result = ScenarioResult(
                        name=scenario.name,
                        success=False,
                        observed=observed,
                        error=f"{step.label}: {failure}",
                        failed_step=step.label,
                        exception=failure,
                    )
                    break
        finally:
            await self._finish(scenario, observed)

        if result is None:
            result = ScenarioResult(name=scenario.name, success=True, observed=observed)
            logger.info(f"✓ {scenario.name}")
        result.duration = trio.current_time() - started
        return result

    async def run_all(self, scenarios: Iterable[Scenario]) -> list[ScenarioResult]:
        """
        Run scenarios in order.  A failed scenario does not stop the others,
        except a SetupError, which aborts the rest of the group.
        """
        results = []
        for scenario in scenarios:
            result = await self.run(scenario)
            results.append(result)
            if isinstance(result.exception, SetupError):
                logger.error(f"Setup failure in {scenario.name}, skipping remaining scenarios")
                break
        return results

    async def _run_step(self, step: Step, observed: Observed) -> Exception | None:
        logger.debug(f"  step {step.label}")
        try:
            value = await step.action(observed)
        except Exception as e:
            if step.expect_error is not None and isinstance(e, step.expect_error):
                logger.debug(f"  step {step.label} failed as expected: {e}")
                observed[step.label] = e
                return None
            return e

        if step.expect_error is not None:
            return AssertionMismatch(step.label, f"error of type {_error_names(step.expect_error)}", value)
        observed[step.label] = value
        return None

    async def _finish(self, scenario: Scenario, observed: Observed) -> None:
        for callback in scenario._finalizers:
            try:
                outcome = callback(observed)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Cleanup of {scenario.name} failed: {e}")


def _error_names(types: ErrorTypes) -> str:
    if isinstance(types, tuple):
        return " | ".join(t.__name__ for t in types)
    return types.__name__
