# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/virt/libvirt.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from talvirt.config.models import NodeSpec
from talvirt.execution.runner import CommandRunner, Invocation

log = logging.getLogger("talvirt")


class Virsh:
    """
    `virsh` invocation builder plus the few read-only queries the workflows need.
    """

    def __init__(self, uri: Optional[str] = None, binary: str = "virsh"):
        self.uri = uri
        self.binary = binary

    def _inv(self, *args: str) -> Invocation:
        base = ["-c", self.uri] if self.uri else []
        return Invocation(self.binary, (*base, *args), timeout_seconds=120)

    def list_all_names(self) -> Invocation:
        return self._inv("list", "--all", "--name")

    def domstate(self, domain: str) -> Invocation:
        return self._inv("domstate", domain)

    def domifaddr(self, domain: str, source: str = "lease") -> Invocation:
        return self._inv("domifaddr", domain, "--source", source)

    def start(self, domain: str) -> Invocation:
        return self._inv("start", domain)

    def destroy(self, domain: str) -> Invocation:
        return self._inv("destroy", domain)

    def undefine(self, domain: str, *, remove_all_storage: bool = True) -> Invocation:
        args = ["undefine", domain]
        if remove_all_storage:
            args.append("--remove-all-storage")
        return self._inv(*args)

    def dumpxml(self, domain: str) -> Invocation:
        return self._inv("dumpxml", domain)

    # ------------------------- queries -------------------------

    def domain_names(self, runner: CommandRunner) -> List[str]:
        result = runner.run(self.list_all_names()).check()
        return [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]

    def state_of(self, runner: CommandRunner, domain: str) -> str:
        """Domain state ("running", "shut off", ...) or "unknown" when virsh cannot tell."""
        result = runner.run(self.domstate(domain))
        if not result.ok:
            return "unknown"
        return result.stdout.strip() or "unknown"

    def export_xml(self, runner: CommandRunner, domain: str, dest: Path) -> bool:
        result = runner.run(self.dumpxml(domain))
        if not result.ok or not result.stdout.strip():
            log.warning("could not export %s XML: %s", domain, result.detail())
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(result.stdout, encoding="utf-8")
        return True


def virt_install(
    node: NodeSpec,
    *,
    iso_path: Path,
    pool_path: Path,
    bridge: str,
    persistent_host_path: Optional[Path] = None,
    uri: Optional[str] = None,
    binary: str = "virt-install",
) -> Invocation:
    """virt-install for a Talos node booting from the metal ISO, then from disk."""
    args: List[str] = ["--connect", uri] if uri else []
    args += [
        "--name", node.name,
        "--vcpus", str(node.vcpus),
        "--memory", str(node.memory_mib),
        "--disk", f"path={pool_path / f'{node.name}.qcow2'},size={node.disk_gb},format=qcow2,bus=virtio",
    ]
    if node.persistent_disk_gb > 0 and persistent_host_path is not None:
        disk = persistent_host_path / f"{node.name}-persistent.qcow2"
        args += ["--disk", f"path={disk},size={node.persistent_disk_gb},format=qcow2,bus=virtio"]

    network = f"bridge={bridge}"
    if node.mac:
        network += f",mac={node.mac}"
    network += ",model=virtio"

    args += [
        "--cdrom", str(iso_path),
        "--network", network,
        "--osinfo", "detect=on,name=linux2024",
        "--graphics", "vnc",
        "--console", "pty,target_type=serial",
        "--boot", "hd,cdrom",
    ]
    if node.gpu_pci:
        args += ["--hostdev", node.gpu_pci]
    args.append("--noautoconsole")
    return Invocation(binary, tuple(args), timeout_seconds=600)
