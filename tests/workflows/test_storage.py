from pathlib import Path

import pytest
import yaml

from talvirt.deploy.sequencer import SequenceState, StepOutcome
from talvirt.errors import PreconditionMissing
from talvirt.workflows.storage import add_persistent_disk, mounted_at, write_patch
from talvirt.execution.runner import CommandResult, Invocation


@pytest.fixture
def machine_configs(cluster_cfg):
    talos = cluster_cfg.paths.talos
    talos.mkdir(parents=True)
    (talos / "controlplane.yaml").write_text("machine: {}\n")
    (talos / "worker.yaml").write_text("machine: {}\n")
    return cluster_cfg


class PatchRecorder:
    """Keeps a copy of the patch file each apply-config points at (it is gone afterwards)."""

    def __init__(self, runner_cls):
        outer = self
        self.patches = []

        class Runner(runner_cls):
            def run(self, inv):
                if "--config-patch" in inv.args:
                    ref = inv.args[inv.args.index("--config-patch") + 1]
                    outer.patches.append((ref, Path(ref.lstrip("@")).read_text()))
                return super().run(inv)

        self.runner_cls = Runner


def test_patch_applied_to_both_nodes_with_reboot(fake_runner, make_workflow, host_tools, machine_configs):
    rec = PatchRecorder(fake_runner)
    runner = rec.runner_cls({"mounts": (0, "NODE FILESYSTEM MOUNTED ON\n10.0.0.1 /dev/vda1 /\n")})
    wf = make_workflow(runner)

    report = add_persistent_disk(wf)

    assert report.state is SequenceState.SUCCEEDED
    applies = runner.ran("apply-config")
    assert len(applies) == 2
    assert all(a.endswith("--mode reboot") for a in applies)
    assert "--nodes 192.168.122.76" in applies[0]
    assert "--nodes 192.168.122.77" in applies[1]
    assert "--insecure" not in applies[0]

    ref, text = rec.patches[0]
    assert ref.startswith("@")
    assert yaml.safe_load(text) == {
        "machine": {"disks": [{"device": "/dev/vdb", "partitions": [{"mountpoint": "/var/lib/persistent"}]}]}
    }
    # scratch patch file is removed on exit
    assert not Path(ref.lstrip("@")).exists()
    # reboot settle between the two nodes
    assert 5 in wf.sleep.calls


def test_already_mounted_nodes_are_skipped(fake_runner, make_workflow, host_tools, machine_configs):
    runner = fake_runner({"mounts": (0, "10.0.0.1 /dev/vdb1 /var/lib/persistent\n")})

    report = add_persistent_disk(make_workflow(runner))

    assert report.by_name()["mount-controlplane"].outcome is StepOutcome.SKIPPED
    assert report.by_name()["mount-worker"].outcome is StepOutcome.SKIPPED
    assert runner.ran("apply-config") == []


def test_apply_failure_stops_before_worker(fake_runner, make_workflow, host_tools, machine_configs):
    runner = fake_runner({"mounts": (1, ""), "--nodes 192.168.122.76": (1, "")})

    report = add_persistent_disk(make_workflow(runner))

    assert report.state is SequenceState.FAILED_FATAL
    assert report.by_name()["mount-worker"].outcome is StepOutcome.NOT_ATTEMPTED


def test_requires_machine_configs(fake_runner, make_workflow, host_tools):
    with pytest.raises(PreconditionMissing):
        add_persistent_disk(make_workflow(fake_runner()))


def test_write_patch_honours_mount_override(fake_runner, make_workflow, cluster_cfg, tmp_path):
    cfg = cluster_cfg.model_copy(
        update={"storage": cluster_cfg.storage.model_copy(update={"persistent_mount_path": "/mnt/persistent"})}
    )
    out = write_patch(make_workflow(fake_runner(), cfg=cfg), tmp_path / "p.yaml")
    assert "/mnt/persistent" in out.read_text()


def test_mounted_at_matches_whole_path_only():
    pred = mounted_at("/var/lib/persistent")
    inv = Invocation("talosctl")
    assert pred(CommandResult(inv, 0, stdout="n /dev/vdb1 /var/lib/persistent\n"))
    assert not pred(CommandResult(inv, 0, stdout="n /dev/vdb1 /var/lib/persistent-old\n"))
    assert not pred(CommandResult(inv, 1, stdout="n /dev/vdb1 /var/lib/persistent\n"))
