import os
import shutil
from pathlib import Path

import pytest

from talvirt.config.models import ClusterConfig, ProjectPaths
from talvirt.execution.context import ExecutionContext
from talvirt.execution.runner import CommandResult, CommandRunner
from talvirt.workflows.base import Workflow


class FakeRunner(CommandRunner):
    """
    Records invocations instead of spawning processes.

    `responses` maps a substring of the command line to an outcome:
    (rc, stdout), a list of those consumed in order (the last one repeats),
    or an exception instance to raise. First matching key wins.
    """

    def __init__(self, responses=None, *, dry_run=False, default_rc=0):
        super().__init__(ExecutionContext(dry_run=dry_run))
        self.responses = dict(responses or {})
        self.default_rc = default_rc
        self.calls = []

    def run(self, inv):
        self.calls.append(inv)
        if self.ctx.dry_run:
            return CommandResult(invocation=inv, returncode=0)
        cmd = " ".join(inv.argv)
        for key, outcome in self.responses.items():
            if key not in cmd:
                continue
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, BaseException):
                raise outcome
            rc, out = outcome
            return CommandResult(invocation=inv, returncode=rc, stdout=out, stderr="" if rc == 0 else "boom")
        return CommandResult(invocation=inv, returncode=self.default_rc)

    def commands(self):
        return [" ".join(c.argv) for c in self.calls]

    def ran(self, fragment):
        return [c for c in self.commands() if fragment in c]


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def no_sleep():
    slept = []

    def _sleep(seconds):
        slept.append(seconds)
        return False

    _sleep.calls = slept
    return _sleep


@pytest.fixture
def cluster_cfg(tmp_path: Path) -> ClusterConfig:
    return ClusterConfig(paths=ProjectPaths(project_dir=tmp_path))


@pytest.fixture
def host_tools(monkeypatch):
    """Pretend every external binary is on PATH and we run as root."""
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(os, "geteuid", lambda: 0)


@pytest.fixture
def make_workflow(cluster_cfg, no_sleep):
    def _make(runner, cfg=None, observers=None, name="test"):
        return Workflow(
            cfg=cfg or cluster_cfg,
            runner=runner,
            name=name,
            observers=observers or [],
            sleep=no_sleep,
        )

    return _make
