import base64

import pytest

from talvirt.deploy.sequencer import SequenceState, StepOutcome
from talvirt.workflows.apps import build_steps, cilium_values, deploy_apps

INITIAL = base64.b64encode(b"generated-pw").decode()


@pytest.fixture
def kubeconfig(cluster_cfg):
    cluster_cfg.paths.kubeconfig_path.write_text("apiVersion: v1\n")
    return cluster_cfg


def test_steps_in_order(fake_runner, make_workflow, kubeconfig):
    steps = build_steps(make_workflow(fake_runner()))
    assert [s.name for s in steps] == [
        "install-cilium",
        "apply-argocd",
        "apply-app-1",
        "apply-app-2",
        "wait-argocd-secret",
    ]
    assert steps[-1].fatal is False
    assert all(s.fatal for s in steps[:-1])


def test_cilium_values_point_at_control_plane(fake_runner, make_workflow, kubeconfig):
    values = cilium_values(make_workflow(fake_runner()))
    assert values["k8sServiceHost"] == "192.168.122.76"
    assert values["kubeProxyReplacement"] == "true"
    assert values["securityContext.capabilities.cleanCiliumState"] == "{NET_ADMIN,SYS_ADMIN,SYS_RESOURCE}"


def test_deploy_without_password_rotation(fake_runner, make_workflow, host_tools, kubeconfig, tmp_path):
    runner = fake_runner({"jsonpath": (0, INITIAL)})

    report = deploy_apps(make_workflow(runner), environ={})

    assert report.state is SequenceState.SUCCEEDED
    helm = runner.ran("helm upgrade --install cilium cilium")
    assert helm and "--set k8sServiceHost=192.168.122.76" in helm[0]
    assert runner.ran(f"kubectl apply -k {tmp_path / 'bootstrap/argocd'}")
    assert len(runner.ran("kubectl apply -f")) == 2
    assert [c for c in runner.calls if c.program == "argocd"] == []


def test_password_rotation(fake_runner, make_workflow, host_tools, kubeconfig):
    runner = fake_runner({"jsonpath": (0, INITIAL)})

    report = deploy_apps(make_workflow(runner), environ={"ARGOCD_ADMIN_PASSWORD": "n3w-pw"})

    assert report.state is SequenceState.SUCCEEDED
    login = [c for c in runner.calls if c.program == "argocd" and c.args[0] == "login"][0]
    assert "generated-pw" in login.args
    assert "generated-pw" not in login.display()
    update = [c for c in runner.calls if c.program == "argocd" and c.args[0] == "account"][0]
    assert "n3w-pw" in update.args
    assert report.by_name()["argocd-update-password"].outcome is StepOutcome.SUCCEEDED


def test_rotation_failure_is_only_a_warning(fake_runner, make_workflow, host_tools, kubeconfig):
    runner = fake_runner({"jsonpath": (0, INITIAL), "update-password": (1, "")})

    report = deploy_apps(make_workflow(runner), environ={"ARGOCD_ADMIN_PASSWORD": "n3w-pw"})

    assert report.state is SequenceState.COMPLETED_WITH_WARNINGS
    assert report.exit_code == 0


def test_unreadable_secret_skips_rotation(fake_runner, make_workflow, host_tools, kubeconfig):
    runner = fake_runner({"jsonpath": (0, "")})

    report = deploy_apps(make_workflow(runner), environ={"ARGOCD_ADMIN_PASSWORD": "n3w-pw"})

    # the secret wait times out (warning) and rotation never starts
    assert report.by_name()["wait-argocd-secret"].outcome is StepOutcome.TIMEOUT
    assert "argocd-login" not in report.by_name()
    assert report.exit_code == 0


def test_helm_failure_is_fatal(fake_runner, make_workflow, host_tools, kubeconfig):
    runner = fake_runner({"helm": (1, "")})

    report = deploy_apps(make_workflow(runner), environ={"ARGOCD_ADMIN_PASSWORD": "x"})

    assert report.state is SequenceState.FAILED_FATAL
    assert runner.ran("kubectl apply") == []
    assert runner.ran("argocd login") == []
