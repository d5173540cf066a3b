# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/vms.py
from __future__ import annotations

import logging
import re
from typing import List, Optional

from talvirt.deploy.poller import ReadinessCheck
from talvirt.deploy.sequencer import SequenceReport, SequenceState, Step
from talvirt.errors import LaunchFailure, NonZeroExit
from talvirt.execution.preflight import require_binaries, require_root
from talvirt.execution.runner import CommandResult, Invocation
from talvirt.virt.libvirt import virt_install
from talvirt.workflows.base import Workflow
from talvirt.workflows.download import ensure_file

log = logging.getLogger("talvirt")

_INET_RE = re.compile(r"\binet\s+(\d+(?:\.\d+){3}/\d+)")


def _ip(*args: str) -> Invocation:
    return Invocation("ip", tuple(args), timeout_seconds=30)


def _systemctl(*args: str) -> Invocation:
    return Invocation("systemctl", tuple(args), timeout_seconds=60)


def bridge_exists(wf: Workflow) -> bool:
    if wf.runner.ctx.dry_run:
        return False
    try:
        return wf.runner.run(_ip("link", "show", wf.cfg.network.bridge)).ok
    except LaunchFailure:
        return False


def physical_cidr(wf: Workflow) -> Optional[str]:
    """IPv4 address/prefix currently held by the physical interface, if any."""
    result = wf.runner.run(_ip("-4", "-o", "addr", "show", "dev", wf.cfg.network.physical_interface))
    if not result.ok:
        return None
    m = _INET_RE.search(result.stdout)
    return m.group(1) if m else None


def libvirtd_step() -> Step:
    return Step(
        name="start-libvirtd",
        intent="Ensuring libvirtd is running...",
        action=_systemctl("start", "libvirtd"),
        skip_if=ReadinessCheck(
            _systemctl("is-active", "--quiet", "libvirtd"),
            description="libvirtd already active",
        ),
    )


def bridge_steps(wf: Workflow, cidr: Optional[str]) -> List[Step]:
    net = wf.cfg.network
    steps = [
        Step(
            name="bridge-create",
            intent=f"Creating bridge {net.bridge}...",
            action=_ip("link", "add", "name", net.bridge, "type", "bridge"),
        ),
        Step(
            name="bridge-enslave",
            intent=f"Attaching {net.physical_interface} to {net.bridge}...",
            action=_ip("link", "set", net.physical_interface, "master", net.bridge),
        ),
    ]
    if cidr:
        steps += [
            Step(
                name="bridge-move-address-del",
                intent=f"Removing {cidr} from {net.physical_interface}...",
                action=_ip("addr", "del", cidr, "dev", net.physical_interface),
                fatal=False,
            ),
            Step(
                name="bridge-move-address-add",
                intent=f"Adding {cidr} to {net.bridge}...",
                action=_ip("addr", "add", cidr, "dev", net.bridge),
            ),
        ]
    steps += [
        Step(
            name="bridge-up",
            intent=f"Bringing {net.bridge} up...",
            action=_ip("link", "set", net.bridge, "up"),
        ),
        Step(
            name="physical-up",
            intent=f"Bringing {net.physical_interface} up...",
            action=_ip("link", "set", net.physical_interface, "up"),
        ),
    ]
    return steps


_INACTIVE_STATES = ("shut off", "crashed")


def _domain_absent(result: CommandResult) -> bool:
    return not result.ok


def _domain_inactive(result: CommandResult) -> bool:
    """Absent, or defined but not running."""
    return not result.ok or result.stdout.strip() in _INACTIVE_STATES


def _domain_active(result: CommandResult) -> bool:
    return not _domain_inactive(result)


def domain_steps(wf: Workflow, *, recreate: bool = True) -> List[Step]:
    cfg = wf.cfg
    virsh = wf.virsh

    steps: List[Step] = []
    for node in cfg.nodes:
        if recreate:
            absent = ReadinessCheck(
                virsh.domstate(node.name),
                description=f"no existing domain {node.name}",
                ready_when=_domain_absent,
            )
            steps += [
                Step(
                    name=f"destroy-{node.role}",
                    intent=f"Removing existing VM {node.name}...",
                    action=virsh.destroy(node.name),
                    skip_if=ReadinessCheck(
                        virsh.domstate(node.name),
                        description=f"{node.name} not running",
                        ready_when=_domain_inactive,
                    ),
                    fatal=False,
                ),
                Step(
                    name=f"undefine-{node.role}",
                    intent=f"Undefining {node.name} and its storage...",
                    action=virsh.undefine(node.name),
                    skip_if=absent,
                    fatal=False,
                ),
            ]
        steps.append(
            Step(
                name=f"create-{node.role}",
                intent=(
                    f"Creating {node.name} ({node.vcpus} CPU, {node.memory_mib} MiB RAM, "
                    f"{node.disk_gb}GB disk{', GPU passthrough' if node.gpu_pci else ''})..."
                ),
                action=virt_install(
                    node,
                    iso_path=cfg.storage.iso_path,
                    pool_path=cfg.storage.pool_path,
                    bridge=cfg.network.bridge,
                    persistent_host_path=cfg.storage.persistent_host_path,
                    uri=cfg.network.libvirt_uri,
                ),
                skip_if=None if recreate else ReadinessCheck(
                    virsh.domstate(node.name),
                    description=f"domain {node.name} already defined",
                ),
                remediation=(
                    f"Check libvirt logs: journalctl -u libvirtd\n"
                    f"Verify the ISO exists: ls -l {cfg.storage.iso_path}"
                    + (f"\nVerify the GPU address: lspci -s {node.gpu_pci}" if node.gpu_pci else "")
                ),
            )
        )
        if not recreate:
            steps.append(
                Step(
                    name=f"start-{node.role}",
                    intent=f"Starting {node.name}...",
                    action=virsh.start(node.name),
                    skip_if=ReadinessCheck(
                        virsh.domstate(node.name),
                        description=f"{node.name} already running",
                        ready_when=_domain_active,
                    ),
                    fatal=False,
                )
            )
    return steps


def export_definitions(wf: Workflow) -> None:
    vms_dir = wf.cfg.paths.vms
    print("Exporting VM XML definitions...")
    for node in wf.cfg.nodes:
        dest = vms_dir / f"{node.role}.xml"
        if wf.virsh.export_xml(wf.runner, node.name, dest):
            print(f"  - {dest}")


def warn_undefined(wf: Workflow) -> List[str]:
    """Configured nodes missing from `virsh list --all`."""
    try:
        defined = set(wf.virsh.domain_names(wf.runner))
    except NonZeroExit as e:
        log.warning("could not list libvirt domains: %s", e)
        return []
    missing = [node.name for node in wf.cfg.nodes if node.name not in defined]
    for name in missing:
        log.warning("domain %s is not defined after create-vms", name)
        print(f"WARNING: {name} is not listed by virsh")
    return missing


def create_vms(wf: Workflow, *, recreate: bool = True) -> SequenceReport:
    """
    Prepare the host (libvirtd, bridge, ISO) and create one libvirt domain per node.
    """
    require_root()
    require_binaries(["virsh", "virt-install", "systemctl", "ip"])
    cfg = wf.cfg

    print("VMs to create:")
    for node in cfg.nodes:
        print(f"  - {node.name} ({node.vcpus} CPU, {node.memory_mib} MiB RAM, {node.disk_gb}GB disk)")

    steps = [libvirtd_step()]
    if bridge_exists(wf):
        print(f"Bridge {cfg.network.bridge} already exists")
    else:
        steps += bridge_steps(wf, physical_cidr(wf))

    if not wf.runner.ctx.dry_run:
        ensure_file(cfg.talos.iso_url, cfg.storage.iso_path)

    steps += domain_steps(wf, recreate=recreate)
    report = wf.sequencer().run(steps)
    if report.state in (SequenceState.FAILED_FATAL, SequenceState.CANCELLED):
        return report

    export_definitions(wf)

    print("\nVM state:")
    for node in cfg.nodes:
        print(f"  {node.name}: {wf.virsh.state_of(wf.runner, node.name)}")
    if not wf.runner.ctx.dry_run:
        warn_undefined(wf)
    print("\nTo access VM console:")
    for node in cfg.nodes:
        print(f"  virsh console {node.name}")
    print("\nOnce Talos boots, check addresses with: virsh domifaddr <vm-name>")
    print("Next step:\n  Run: talvirt bootstrap")
    return report
