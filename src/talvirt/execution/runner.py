# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/execution/runner.py
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from talvirt.errors import LaunchFailure, NonZeroExit, OperationCancelled
from talvirt.execution.context import ExecutionContext

log = logging.getLogger("talvirt")

# how often a running process is checked for cancellation
_WAIT_SLICE_SECONDS = 0.2


@dataclass(frozen=True)
class Invocation:
    """
    Describes one external command: program, arguments, env overrides, cwd.
    """

    program: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout_seconds: Optional[float] = None
    # values masked in logs and diagnostics (passwords)
    redact: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        prefix = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(self.env.items()))
        cmd = shlex.join(["****" if a in self.redact else a for a in self.argv])
        return f"{prefix} {cmd}" if prefix else cmd


@dataclass(frozen=True)
class CommandResult:
    invocation: Invocation
    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def detail(self) -> str:
        """Short failure description used in poll/step diagnostics."""
        if self.timed_out:
            return f"timed out after {self.elapsed_seconds:.1f}s"
        text = (self.stderr or self.stdout or "").strip()
        last = text.splitlines()[-1] if text else ""
        return f"rc={self.returncode}" + (f": {last}" if last else "")

    def check(self) -> "CommandResult":
        if not self.ok:
            raise NonZeroExit(self.invocation.display(), self.returncode, self.stderr)
        return self


class CommandRunner:
    """
    Runs an Invocation synchronously and returns a CommandResult.

    - Never raises on non-zero exit; the status is part of the result.
    - Raises LaunchFailure when the program cannot be started.
    - Raises OperationCancelled when the context's cancel token fires mid-command.
    """

    def __init__(
        self,
        ctx: Optional[ExecutionContext] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx or ExecutionContext()
        self.clock = clock

    def run(self, inv: Invocation) -> CommandResult:
        cmd_str = inv.display()
        log.debug("$ %s", cmd_str)

        if self.ctx.cancel.cancelled:
            raise OperationCancelled(self.ctx.cancel.reason or "cancelled")

        if self.ctx.dry_run:
            log.info("[dry-run] %s", cmd_str)
            return CommandResult(invocation=inv, returncode=0)

        env = None
        if inv.env:
            env = dict(os.environ)
            env.update(inv.env)

        start = self.clock()
        try:
            proc = subprocess.Popen(
                inv.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                cwd=inv.cwd,
            )
        except FileNotFoundError as e:
            raise LaunchFailure(inv.program, "binary not found") from e
        except PermissionError as e:
            raise LaunchFailure(inv.program, "permission denied") from e
        except OSError as e:
            raise LaunchFailure(inv.program, str(e)) from e

        stdout, stderr, timed_out = self._wait(proc, inv, start)
        elapsed = self.clock() - start

        result = CommandResult(
            invocation=inv,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed_seconds=elapsed,
            timed_out=timed_out,
        )

        if result.stdout:
            log.debug("[stdout]\n%s", result.stdout.rstrip())
        if result.stderr:
            log.debug("[stderr]\n%s", result.stderr.rstrip())
        log.debug("[exit %d] (%.2fs)", result.returncode, elapsed)
        return result

    def _wait(self, proc: subprocess.Popen, inv: Invocation, start: float):
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_WAIT_SLICE_SECONDS)
                return stdout, stderr, False
            except subprocess.TimeoutExpired:
                pass

            if self.ctx.cancel.cancelled:
                self._stop(proc)
                raise OperationCancelled(
                    f"{inv.program} interrupted: {self.ctx.cancel.reason or 'cancelled'}"
                )

            if inv.timeout_seconds is not None and self.clock() - start >= inv.timeout_seconds:
                proc.kill()
                stdout, stderr = proc.communicate()
                log.warning("%s timed out after %ss", inv.program, inv.timeout_seconds)
                return stdout, stderr, True

    @staticmethod
    def _stop(proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
