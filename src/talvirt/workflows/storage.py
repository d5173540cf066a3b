# src/talvirt/workflows/storage.py
from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable, List

import yaml

from talvirt.deploy.poller import ReadinessCheck
from talvirt.deploy.sequencer import SequenceReport, Step
from talvirt.execution.preflight import require_binaries, require_files
from talvirt.execution.runner import CommandResult
from talvirt.talos.talosctl import persistent_disk_patch
from talvirt.workflows.base import Workflow

log = logging.getLogger("talvirt")


def mounted_at(path: str) -> Callable[[CommandResult], bool]:
    def _pred(result: CommandResult) -> bool:
        return result.ok and any(
            path in line.split() for line in result.stdout.splitlines()
        )

    return _pred


def write_patch(wf: Workflow, dest: Path) -> Path:
    storage = wf.cfg.storage
    patch = persistent_disk_patch(storage.persistent_device, storage.persistent_mount_path)
    dest.write_text(yaml.safe_dump(patch, sort_keys=False), encoding="utf-8")
    return dest


def build_steps(wf: Workflow, patch_file: Path) -> List[Step]:
    cfg = wf.cfg
    talos = wf.talosctl
    mount_path = cfg.storage.persistent_mount_path
    bs = cfg.bootstrap
    steps: List[Step] = []

    for node, config_name in ((cfg.controlplane, "controlplane.yaml"), (cfg.worker, "worker.yaml")):
        steps.append(
            Step(
                name=f"mount-{node.role}",
                intent=f"Applying persistent disk mount to {node.role} ({node.ip})...",
                action=talos.apply_config(
                    node.ip,
                    cfg.paths.talos / config_name,
                    patch_file=patch_file,
                    mode="reboot",
                ),
                skip_if=ReadinessCheck(
                    talos.mounts(node.ip),
                    description=f"{mount_path} already mounted",
                    ready_when=mounted_at(mount_path),
                ),
                # give the first node time to start rebooting
                settle_seconds=bs.reboot_settle_seconds if node.role == "controlplane" else 0.0,
                remediation=f"Check the node: talosctl -n {node.ip} dmesg | tail",
            )
        )

    steps.append(
        Step(
            name="wait-controlplane-back",
            intent="Waiting for control plane to come back...",
            check=ReadinessCheck(
                talos.service_status(cfg.controlplane.ip, "etcd"),
                description="etcd service after reboot",
            ),
            max_attempts=bs.etcd.max_attempts,
            interval_seconds=bs.etcd.interval_seconds,
            fatal=False,
        )
    )
    return steps


def add_persistent_disk(wf: Workflow) -> SequenceReport:
    cfg = wf.cfg
    require_binaries(["talosctl"])
    require_files(
        [cfg.paths.talos / "controlplane.yaml", cfg.paths.talos / "worker.yaml"],
        hint="Run: talvirt gen-config",
    )
    print(
        f"This will configure both VMs to mount {cfg.storage.persistent_device} "
        f"at {cfg.storage.persistent_mount_path}"
    )

    with tempfile.TemporaryDirectory(prefix="talvirt-disk-") as tmpdir:
        patch_file = write_patch(wf, Path(tmpdir) / "persistent-disk-patch.yaml")
        print("Disk mount configuration:")
        print(patch_file.read_text(encoding="utf-8"))
        report = wf.sequencer().run(build_steps(wf, patch_file))

    if report.exit_code == 0:
        print("Verify the mount once the VMs are back:")
        print(f"  talosctl -n {cfg.worker.ip} mounts | grep {cfg.storage.persistent_mount_path}")
    return report
