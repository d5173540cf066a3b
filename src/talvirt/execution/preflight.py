# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from talvirt.errors import PreconditionMissing

INSTALL_HINTS: Dict[str, str] = {
    "talosctl": "Install it with: curl -sL https://talos.dev/install | sh",
    "kubectl": "Install kubectl: https://kubernetes.io/docs/tasks/tools/",
    "virsh": "Install libvirt clients (e.g. apt install libvirt-clients)",
    "virt-install": "Install virtinst (e.g. apt install virtinst)",
    "helm": "Install helm: https://helm.sh/docs/intro/install/",
    "argocd": "Install the argocd CLI: https://argo-cd.readthedocs.io/en/stable/cli_installation/",
    "systemctl": "systemd is required to install host exporters",
    "ip": "Install iproute2 (e.g. apt install iproute2)",
    "install": "Install coreutils",
}


def require_binaries(names: Iterable[str], *, which: Optional[Callable[[str], Optional[str]]] = None) -> None:
    which = which or shutil.which
    for name in names:
        if which(name) is None:
            raise PreconditionMissing(f"{name} is not installed", hint=INSTALL_HINTS.get(name))


def require_files(paths: Iterable[Path], *, hint: Optional[str] = None) -> None:
    for p in paths:
        if not Path(p).is_file():
            raise PreconditionMissing(f"{p} not found", hint=hint)


def require_root(geteuid: Optional[Callable[[], int]] = None) -> None:
    geteuid = geteuid or os.geteuid
    if geteuid() != 0:
        raise PreconditionMissing(
            "This command must be run as root",
            hint="Re-run with sudo",
        )
