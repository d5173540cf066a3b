# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/deploy/poller.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from talvirt.errors import OperationCancelled, PollTimeout
from talvirt.execution.context import CancelToken
from talvirt.execution.runner import CommandResult, CommandRunner, Invocation

log = logging.getLogger("talvirt")


def exit_zero(result: CommandResult) -> bool:
    return result.ok


def has_output_lines(minimum: int = 1) -> Callable[[CommandResult], bool]:
    """Ready when the command succeeds and prints at least `minimum` non-empty lines."""

    def _pred(result: CommandResult) -> bool:
        if not result.ok:
            return False
        lines = [ln for ln in result.stdout.splitlines() if ln.strip()]
        return len(lines) >= minimum

    return _pred


@dataclass(frozen=True)
class ReadinessCheck:
    invocation: Invocation
    description: str = ""
    ready_when: Callable[[CommandResult], bool] = exit_zero

    @property
    def label(self) -> str:
        return self.description or self.invocation.display()


class PollStatus(str, Enum):
    READY = "READY"
    EXHAUSTED = "EXHAUSTED"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    attempts: int
    elapsed_seconds: float = 0.0
    last_result: Optional[CommandResult] = None

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY

    def detail(self) -> str:
        if self.last_result is None:
            return ""
        return self.last_result.detail()

    def raise_for_status(self, description: str) -> "PollResult":
        if not self.ready:
            raise PollTimeout(description, self.attempts, self.detail())
        return self


AttemptHook = Callable[[int, int, CommandResult, bool], None]


class ReadinessPoller:
    """
    Invoke a readiness check until it reports ready or the attempt budget runs out.

    The delay between attempts is fixed. Every non-ready result is treated the
    same way; a check that fails permanently consumes the whole budget.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        cancel: Optional[CancelToken] = None,
        sleep: Optional[Callable[[float], Optional[bool]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.cancel = cancel or runner.ctx.cancel
        # sleep returns True when interrupted by cancellation
        self.sleep = sleep or self.cancel.wait
        self.clock = clock

    def poll(
        self,
        check: ReadinessCheck,
        *,
        max_attempts: int,
        interval_seconds: float,
        on_attempt: Optional[AttemptHook] = None,
    ) -> PollResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")

        start = self.clock()
        last: Optional[CommandResult] = None

        if self.runner.ctx.dry_run:
            last = self.runner.run(check.invocation)
            return PollResult(PollStatus.READY, 1, 0.0, last)

        for attempt in range(1, max_attempts + 1):
            if self.cancel.cancelled:
                raise OperationCancelled(f"poll '{check.label}' cancelled at attempt {attempt}")

            last = self.runner.run(check.invocation)
            ready = bool(check.ready_when(last))

            if on_attempt:
                on_attempt(attempt, max_attempts, last, ready)

            if ready:
                log.debug("[poll] %s ready after %d attempt(s)", check.label, attempt)
                return PollResult(PollStatus.READY, attempt, self.clock() - start, last)

            log.debug(
                "[poll] %s not ready (%d/%d): %s",
                check.label, attempt, max_attempts, last.detail(),
            )

            if attempt < max_attempts and interval_seconds > 0:
                if self.sleep(interval_seconds):
                    raise OperationCancelled(
                        f"poll '{check.label}' cancelled after {attempt} attempt(s)"
                    )

        log.info("[poll] %s exhausted %d attempts", check.label, max_attempts)
        return PollResult(PollStatus.EXHAUSTED, max_attempts, self.clock() - start, last)
