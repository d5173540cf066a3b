# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/deploy/sequencer.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from talvirt.deploy.poller import PollResult, ReadinessCheck, ReadinessPoller
from talvirt.errors import LaunchFailure, OperationCancelled, PollTimeout
from talvirt.execution.runner import CommandResult, CommandRunner, Invocation
from talvirt.observers.dispatcher import EventBus
from talvirt.observers.events import (
    new_ctx,
    stamp,
    PollAttempt,
    SequenceSummary,
    StepFailed,
    StepNotAttempted,
    StepSkipped,
    StepStarted,
    StepSucceeded,
)

log = logging.getLogger("talvirt")


@dataclass(frozen=True)
class Step:
    """
    One provisioning step: an optional action, optionally gated by a readiness poll.

    At least one of `action` / `check` must be set. `fatal_on_timeout` defaults to
    `fatal`. `skip_if` is an "already done" probe; when it holds the action is not run.
    """

    name: str
    action: Optional[Invocation] = None
    check: Optional[ReadinessCheck] = None
    max_attempts: int = 1
    interval_seconds: float = 0.0
    fatal: bool = True
    fatal_on_timeout: Optional[bool] = None
    skip_if: Optional[ReadinessCheck] = None
    settle_seconds: float = 0.0
    intent: str = ""
    remediation: Optional[str] = None

    def __post_init__(self) -> None:
        if self.action is None and self.check is None:
            raise ValueError(f"step {self.name!r} needs an action or a readiness check")
        if self.check is not None and self.max_attempts < 1:
            raise ValueError(f"step {self.name!r}: max_attempts must be >= 1")

    @property
    def timeout_is_fatal(self) -> bool:
        return self.fatal if self.fatal_on_timeout is None else self.fatal_on_timeout


class StepOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


class SequenceState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED_FATAL = "FAILED_FATAL"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    CANCELLED = "CANCELLED"


_SEVERITY = {
    SequenceState.PENDING: 0,
    SequenceState.RUNNING: 0,
    SequenceState.SUCCEEDED: 1,
    SequenceState.COMPLETED_WITH_WARNINGS: 2,
    SequenceState.FAILED_FATAL: 3,
    SequenceState.CANCELLED: 4,
}


@dataclass(frozen=True)
class RunResult:
    step: str
    outcome: StepOutcome
    attempts: int = 0
    poll_attempts: int = 0
    action_ran: bool = False
    elapsed_seconds: float = 0.0
    output: str = ""
    error: Optional[str] = None
    fatal: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (StepOutcome.SUCCEEDED, StepOutcome.SKIPPED)


@dataclass
class SequenceReport:
    results: List[RunResult] = field(default_factory=list)
    state: SequenceState = SequenceState.PENDING
    failed_step: Optional[str] = None

    def add(self, result: RunResult) -> None:
        self.results.append(result)

    def by_name(self) -> Dict[str, RunResult]:
        return {r.step: r for r in self.results}

    def count(self, outcome: StepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def warnings(self) -> int:
        return sum(
            1 for r in self.results
            if r.outcome in (StepOutcome.FAILED, StepOutcome.TIMEOUT) and not r.fatal
        )

    @property
    def total_poll_attempts(self) -> int:
        return sum(r.poll_attempts for r in self.results)

    @property
    def actions_executed(self) -> int:
        return sum(1 for r in self.results if r.action_ran)

    @property
    def exit_code(self) -> int:
        if self.state is SequenceState.CANCELLED:
            return 130
        if self.state is SequenceState.FAILED_FATAL:
            return 1
        return 0

    def merge(self, other: "SequenceReport") -> "SequenceReport":
        """Fold a follow-up sequence into this report; the worse state wins."""
        self.results.extend(other.results)
        if _SEVERITY[other.state] > _SEVERITY[self.state]:
            self.state = other.state
            self.failed_step = other.failed_step
        return self

    def summary(self) -> str:
        return (
            f"{self.state.value}: SUCCEEDED={self.count(StepOutcome.SUCCEEDED)} "
            f"SKIPPED={self.count(StepOutcome.SKIPPED)} "
            f"WARNINGS={self.warnings} "
            f"NOT_ATTEMPTED={self.count(StepOutcome.NOT_ATTEMPTED)}"
        )


class _StepAborted(Exception):
    """Internal: carries the RunResult of a step that stopped the sequence."""

    def __init__(self, result: RunResult, state: SequenceState):
        super().__init__(result.error or result.outcome.value)
        self.result = result
        self.state = state


class Sequencer:
    """
    Runs Steps strictly in order on the calling thread.

    Fatal failures stop the sequence (later steps are reported NOT_ATTEMPTED);
    non-fatal failures are recorded as warnings and the sequence continues.
    Nothing is rolled back: recovery is re-running, relying on skip_if probes
    and the idempotence of the underlying tools.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        poller: Optional[ReadinessPoller] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
        sleep: Optional[Callable[[float], Optional[bool]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.cancel = runner.ctx.cancel
        self.poller = poller or ReadinessPoller(runner, sleep=sleep, clock=clock)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(workflow="sequence", cluster=None)
        self.sleep = sleep or self.cancel.wait
        self.clock = clock
        self.state = SequenceState.PENDING

    # ------------------------- helpers -------------------------

    def _emit(self, cls, **kw) -> None:
        self.bus.emit(cls(**stamp(self.run_ctx), **kw))

    def _settle(self, seconds: float) -> None:
        if seconds <= 0 or self.runner.ctx.dry_run:
            return
        if self.sleep(seconds):
            raise OperationCancelled("cancelled while waiting for step to settle")

    def _probe(self, check: ReadinessCheck) -> bool:
        # dry runs show every action, so "already done" probes never hold
        if self.runner.ctx.dry_run:
            return False
        try:
            result = self.runner.run(check.invocation)
        except LaunchFailure:
            return False
        return bool(check.ready_when(result))

    def _fail(
        self,
        step: Step,
        outcome: StepOutcome,
        *,
        fatal: bool,
        started: float,
        error: str,
        attempts: int = 0,
        poll_attempts: int = 0,
        action_ran: bool = False,
        output: str = "",
    ) -> RunResult:
        result = RunResult(
            step=step.name,
            outcome=outcome,
            attempts=attempts,
            poll_attempts=poll_attempts,
            action_ran=action_ran,
            elapsed_seconds=self.clock() - started,
            output=output,
            error=error,
            fatal=fatal,
        )
        self._emit(
            StepFailed,
            name=step.name,
            outcome=outcome.value,
            fatal=fatal,
            attempts=attempts,
            error=error,
            remediation=step.remediation if fatal else None,
        )
        if fatal:
            state = (
                SequenceState.CANCELLED
                if outcome is StepOutcome.CANCELLED
                else SequenceState.FAILED_FATAL
            )
            raise _StepAborted(result, state)
        log.warning("%s %s (non-fatal): %s", step.name, outcome.value, error)
        return result

    # ------------------------- step execution -------------------------

    def _run_step(self, step: Step) -> RunResult:
        started = self.clock()
        action_ran = False
        action_result: Optional[CommandResult] = None

        try:
            if step.skip_if is not None and self._probe(step.skip_if):
                reason = step.skip_if.description or "already satisfied"
                self._emit(StepSkipped, name=step.name, reason=reason)
                return RunResult(
                    step=step.name,
                    outcome=StepOutcome.SKIPPED,
                    elapsed_seconds=self.clock() - started,
                )

            if step.action is not None:
                try:
                    action_result = self.runner.run(step.action)
                except LaunchFailure as e:
                    return self._fail(
                        step, StepOutcome.FAILED, fatal=True, started=started, error=str(e)
                    )
                action_ran = True
                if not action_result.ok:
                    return self._fail(
                        step,
                        StepOutcome.FAILED,
                        fatal=step.fatal,
                        started=started,
                        error=action_result.detail(),
                        attempts=1,
                        action_ran=True,
                        output=action_result.stdout,
                    )
                self._settle(step.settle_seconds)

            if step.check is None:
                return self._succeed(step, started, attempts=1, action_result=action_result)

            def _on_attempt(attempt: int, max_attempts: int, res: CommandResult, ready: bool) -> None:
                self._emit(
                    PollAttempt,
                    name=step.name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    ready=ready,
                    detail="" if ready else res.detail(),
                )

            try:
                poll: PollResult = self.poller.poll(
                    step.check,
                    max_attempts=step.max_attempts,
                    interval_seconds=step.interval_seconds,
                    on_attempt=_on_attempt,
                )
            except LaunchFailure as e:
                return self._fail(
                    step, StepOutcome.FAILED, fatal=True, started=started,
                    error=str(e), action_ran=action_ran,
                )

            try:
                poll.raise_for_status(step.check.label)
            except PollTimeout as e:
                return self._fail(
                    step,
                    StepOutcome.TIMEOUT,
                    fatal=step.timeout_is_fatal,
                    started=started,
                    error=f"{e} ({e.last_detail})",
                    attempts=poll.attempts,
                    poll_attempts=poll.attempts,
                    action_ran=action_ran,
                    output=poll.last_result.stdout if poll.last_result else "",
                )
            return self._succeed(
                step,
                started,
                attempts=poll.attempts,
                poll_attempts=poll.attempts,
                action_result=action_result,
                check_result=poll.last_result,
            )

        except OperationCancelled as e:
            return self._fail(
                step, StepOutcome.CANCELLED, fatal=True, started=started,
                error=str(e), action_ran=action_ran,
            )

    def _succeed(
        self,
        step: Step,
        started: float,
        *,
        attempts: int,
        poll_attempts: int = 0,
        action_result: Optional[CommandResult] = None,
        check_result: Optional[CommandResult] = None,
    ) -> RunResult:
        elapsed = self.clock() - started
        output = ""
        if action_result is not None:
            output = action_result.stdout
        elif check_result is not None:
            output = check_result.stdout
        self._emit(
            StepSucceeded,
            name=step.name,
            attempts=attempts,
            duration_ms=int(elapsed * 1000),
        )
        return RunResult(
            step=step.name,
            outcome=StepOutcome.SUCCEEDED,
            attempts=attempts,
            poll_attempts=poll_attempts,
            action_ran=action_result is not None,
            elapsed_seconds=elapsed,
            output=output,
        )

    # ------------------------- public API -------------------------

    def run(self, steps: Sequence[Step]) -> SequenceReport:
        names = [s.name for s in steps]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate step names in sequence: {names}")

        report = SequenceReport()
        total = len(steps)

        for i, step in enumerate(steps):
            self.state = SequenceState.RUNNING
            self._emit(
                StepStarted,
                name=step.name,
                index=i + 1,
                total=total,
                intent=step.intent or step.name,
            )
            try:
                report.add(self._run_step(step))
            except _StepAborted as aborted:
                report.add(aborted.result)
                report.failed_step = step.name
                self.state = aborted.state
                for rest in steps[i + 1:]:
                    report.add(RunResult(step=rest.name, outcome=StepOutcome.NOT_ATTEMPTED))
                    self._emit(StepNotAttempted, name=rest.name)
                break
        else:
            self.state = (
                SequenceState.COMPLETED_WITH_WARNINGS
                if report.warnings
                else SequenceState.SUCCEEDED
            )

        report.state = self.state
        self._emit(
            SequenceSummary,
            state=self.state.value,
            succeeded=report.count(StepOutcome.SUCCEEDED),
            skipped=report.count(StepOutcome.SKIPPED),
            warnings=report.warnings,
            failed_step=report.failed_step,
        )
        log.info("sequence finished: %s", report.summary())
        return report
