import pytest

from talvirt.deploy.poller import ReadinessCheck, ReadinessPoller
from talvirt.deploy.sequencer import (
    RunResult,
    SequenceReport,
    SequenceState,
    Sequencer,
    Step,
    StepOutcome,
)
from talvirt.errors import LaunchFailure
from talvirt.execution.runner import Invocation
from talvirt.observers.dispatcher import EventBus
from talvirt.observers.events import (
    PollAttempt,
    SequenceSummary,
    StepFailed,
    StepNotAttempted,
    StepSkipped,
    StepStarted,
)


def _inv(*argv):
    return Invocation(argv[0], argv[1:])


def _seq(runner, no_sleep, capture=None):
    bus = EventBus([capture]) if capture is not None else EventBus()
    return Sequencer(
        runner,
        poller=ReadinessPoller(runner, sleep=no_sleep),
        bus=bus,
        sleep=no_sleep,
    )


def _bootstrap_core():
    return [
        Step("ApplyControlPlaneConfig", action=_inv("talosctl", "apply-config", "--nodes", "cp")),
        Step(
            "PollEtcdReady",
            check=ReadinessCheck(_inv("talosctl", "-n", "cp", "service", "etcd", "status")),
            max_attempts=120,
            interval_seconds=5,
        ),
        Step("Bootstrap", action=_inv("talosctl", "bootstrap", "-n", "cp")),
        Step(
            "PollKubeAPIReady",
            check=ReadinessCheck(_inv("talosctl", "-n", "cp", "kubeconfig", "/tmp/probe")),
            max_attempts=60,
            interval_seconds=5,
            fatal_on_timeout=False,
        ),
        Step(
            "FetchKubeconfig",
            action=_inv("talosctl", "-n", "cp", "kubeconfig", "/tmp/kubeconfig"),
            fatal_on_timeout=False,
        ),
    ]


def test_bootstrap_core_all_first_time(fake_runner, no_sleep, capture):
    runner = fake_runner()
    report = _seq(runner, no_sleep, capture).run(_bootstrap_core())

    assert report.state is SequenceState.SUCCEEDED
    assert [r.outcome for r in report.results] == [StepOutcome.SUCCEEDED] * 5
    assert report.total_poll_attempts == 2
    assert report.exit_code == 0
    assert no_sleep.calls == []
    assert len(capture.of(StepStarted)) == 5


def test_etcd_never_ready_is_fatal(fake_runner, no_sleep, capture):
    runner = fake_runner({"etcd": (1, "")})
    report = _seq(runner, no_sleep, capture).run(_bootstrap_core())

    by = report.by_name()
    assert report.state is SequenceState.FAILED_FATAL
    assert report.failed_step == "PollEtcdReady"
    assert by["PollEtcdReady"].outcome is StepOutcome.TIMEOUT
    assert by["PollEtcdReady"].poll_attempts == 120
    assert by["PollEtcdReady"].error == (
        "talosctl -n cp service etcd status: not ready after 120 attempts (rc=1: boom)"
    )
    assert by["Bootstrap"].outcome is StepOutcome.NOT_ATTEMPTED
    assert by["FetchKubeconfig"].outcome is StepOutcome.NOT_ATTEMPTED
    assert report.exit_code == 1
    # bootstrap/kubeconfig were never executed
    assert runner.ran("bootstrap") == []
    assert len(runner.ran("etcd")) == 120
    assert len(no_sleep.calls) == 119
    assert {e.name for e in capture.of(StepNotAttempted)} == {
        "Bootstrap", "PollKubeAPIReady", "FetchKubeconfig",
    }
    summary = capture.of(SequenceSummary)[-1]
    assert summary.state == "FAILED_FATAL" and summary.failed_step == "PollEtcdReady"


def test_fatal_action_failure_halts(fake_runner, no_sleep):
    runner = fake_runner({"apply-config": (1, "")})
    report = _seq(runner, no_sleep).run(_bootstrap_core())

    assert report.state is SequenceState.FAILED_FATAL
    assert report.results[0].outcome is StepOutcome.FAILED
    assert all(r.outcome is StepOutcome.NOT_ATTEMPTED for r in report.results[1:])
    assert len(runner.calls) == 1


def test_non_fatal_failure_continues_with_warning(fake_runner, no_sleep, capture):
    runner = fake_runner({"login": (1, "")})
    steps = [
        Step("login", action=_inv("argocd", "login"), fatal=False),
        Step("after", action=_inv("kubectl", "apply", "-f", "x.yaml")),
    ]
    report = _seq(runner, no_sleep, capture).run(steps)

    assert report.state is SequenceState.COMPLETED_WITH_WARNINGS
    assert report.by_name()["after"].outcome is StepOutcome.SUCCEEDED
    assert report.warnings == 1
    assert report.exit_code == 0
    failed = capture.of(StepFailed)[0]
    assert failed.fatal is False


def test_kube_api_timeout_is_a_warning(fake_runner, no_sleep):
    runner = fake_runner({"/tmp/probe": (1, "")})
    report = _seq(runner, no_sleep).run(_bootstrap_core())

    by = report.by_name()
    assert by["PollKubeAPIReady"].outcome is StepOutcome.TIMEOUT
    assert not by["PollKubeAPIReady"].fatal
    assert by["FetchKubeconfig"].outcome is StepOutcome.SUCCEEDED
    assert report.state is SequenceState.COMPLETED_WITH_WARNINGS


def test_launch_failure_is_always_fatal(fake_runner, no_sleep):
    runner = fake_runner({"argocd": LaunchFailure("argocd", "binary not found")})
    steps = [
        Step("login", action=_inv("argocd", "login"), fatal=False),
        Step("after", action=_inv("kubectl", "get", "nodes")),
    ]
    report = _seq(runner, no_sleep).run(steps)
    assert report.state is SequenceState.FAILED_FATAL
    assert report.by_name()["after"].outcome is StepOutcome.NOT_ATTEMPTED


def test_satisfied_target_runs_zero_actions(fake_runner, no_sleep, capture):
    runner = fake_runner()
    steps = [
        Step(
            "apply",
            action=_inv("talosctl", "apply-config"),
            skip_if=ReadinessCheck(_inv("talosctl", "version"), description="already configured"),
        ),
        Step(
            "bootstrap",
            action=_inv("talosctl", "bootstrap"),
            skip_if=ReadinessCheck(_inv("talosctl", "etcd", "members")),
        ),
    ]
    report = _seq(runner, no_sleep, capture).run(steps)

    assert report.actions_executed == 0
    assert report.count(StepOutcome.SKIPPED) == 2
    assert report.state is SequenceState.SUCCEEDED
    assert runner.ran("apply-config") == []
    assert capture.of(StepSkipped)[0].reason == "already configured"


def test_skip_probe_that_cannot_launch_runs_action(fake_runner, no_sleep):
    runner = fake_runner({"probe-bin": LaunchFailure("probe-bin", "binary not found")})
    steps = [
        Step("x", action=_inv("talosctl", "bootstrap"), skip_if=ReadinessCheck(_inv("probe-bin"))),
    ]
    report = _seq(runner, no_sleep).run(steps)
    assert report.results[0].outcome is StepOutcome.SUCCEEDED
    assert report.actions_executed == 1


def test_settle_pause_after_action(fake_runner, no_sleep):
    steps = [Step("apply", action=_inv("talosctl", "apply-config"), settle_seconds=30)]
    _seq(fake_runner(), no_sleep).run(steps)
    assert no_sleep.calls == [30]


def test_cancel_mid_poll_stops_sequence(fake_runner):
    runner = fake_runner({"etcd": (1, "")})

    def sleep(_seconds):
        runner.ctx.cancel.cancel("SIGINT")
        return True

    report = Sequencer(runner, sleep=sleep).run(_bootstrap_core())

    assert report.state is SequenceState.CANCELLED
    assert report.by_name()["PollEtcdReady"].outcome is StepOutcome.CANCELLED
    assert report.by_name()["FetchKubeconfig"].outcome is StepOutcome.NOT_ATTEMPTED
    assert report.exit_code == 130


def test_poll_attempt_events(fake_runner, no_sleep, capture):
    runner = fake_runner({"etcd": [(1, ""), (1, ""), (0, "")]})
    _seq(runner, no_sleep, capture).run(_bootstrap_core()[:2])
    attempts = capture.of(PollAttempt)
    assert [(a.attempt, a.ready) for a in attempts] == [(1, False), (2, False), (3, True)]


def test_duplicate_step_names_rejected(fake_runner, no_sleep):
    steps = [Step("a", action=_inv("true")), Step("a", action=_inv("true"))]
    with pytest.raises(ValueError):
        _seq(fake_runner(), no_sleep).run(steps)


def test_step_needs_action_or_check():
    with pytest.raises(ValueError):
        Step("empty")


def test_dry_run_shows_every_action(fake_runner, no_sleep):
    runner = fake_runner(dry_run=True)
    steps = [
        Step("apply", action=_inv("talosctl", "apply-config"), skip_if=ReadinessCheck(_inv("talosctl", "version"))),
        Step("wait", check=ReadinessCheck(_inv("kubectl", "get", "nodes")), max_attempts=60, interval_seconds=5),
    ]
    report = _seq(runner, no_sleep).run(steps)
    assert report.state is SequenceState.SUCCEEDED
    assert report.actions_executed == 1
    assert no_sleep.calls == []


def test_merge_keeps_worst_state():
    first = SequenceReport(results=[RunResult("a", StepOutcome.SUCCEEDED)], state=SequenceState.SUCCEEDED)
    second = SequenceReport(
        results=[RunResult("b", StepOutcome.FAILED, fatal=False)],
        state=SequenceState.COMPLETED_WITH_WARNINGS,
    )
    merged = first.merge(second)
    assert merged.state is SequenceState.COMPLETED_WITH_WARNINGS
    assert [r.step for r in merged.results] == ["a", "b"]
    assert merged.warnings == 1

    failed = SequenceReport(state=SequenceState.FAILED_FATAL, failed_step="c")
    merged.merge(failed)
    assert merged.state is SequenceState.FAILED_FATAL
    assert merged.failed_step == "c"
    assert merged.exit_code == 1
