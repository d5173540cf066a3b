# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from talvirt.execution.runner import CommandResult, Invocation


class TalosCtl:
    """
    Builds `talosctl` invocations.
    - Nothing runs here; the sequencer/runner execute what these return.
    - TALOSCONFIG is passed through the invocation env, never exported globally.
    """

    def __init__(self, talosconfig: Optional[Path] = None, binary: str = "talosctl"):
        self.talosconfig = talosconfig
        self.binary = binary

    # ------------------------- internal helpers -------------------------

    def _inv(self, *args: str, timeout: Optional[float] = None) -> Invocation:
        env = {"TALOSCONFIG": str(self.talosconfig)} if self.talosconfig else {}
        return Invocation(self.binary, tuple(args), env=env, timeout_seconds=timeout)

    # ------------------------- node lifecycle -------------------------

    def apply_config(
        self,
        node: str,
        config_file: Path,
        *,
        insecure: bool = False,
        patch_file: Optional[Path] = None,
        mode: Optional[str] = None,
    ) -> Invocation:
        args: List[str] = ["apply-config"]
        if insecure:
            args.append("--insecure")
        args += ["--nodes", node, "--file", str(config_file)]
        if patch_file is not None:
            args += ["--config-patch", f"@{patch_file}"]
        if mode:
            args += ["--mode", mode]
        return self._inv(*args)

    def service_status(self, node: str, service: str) -> Invocation:
        return self._inv("-n", node, "service", service, "status", timeout=30)

    def version(self, node: str) -> Invocation:
        return self._inv("-n", node, "version", "--short", timeout=30)

    def bootstrap(self, node: str) -> Invocation:
        return self._inv("bootstrap", "-n", node)

    def etcd_members(self, node: str) -> Invocation:
        return self._inv("-n", node, "etcd", "members", timeout=30)

    def mounts(self, node: str) -> Invocation:
        return self._inv("-n", node, "mounts", timeout=30)

    def kubeconfig(self, node: str, dest: Path, *, force: bool = True) -> Invocation:
        args = ["-n", node, "kubeconfig", str(dest)]
        if force:
            args.append("--force")
        return self._inv(*args, timeout=60)

    def config_endpoint(self, *endpoints: str) -> Invocation:
        return self._inv("config", "endpoint", *endpoints)

    def config_node(self, *nodes: str) -> Invocation:
        return self._inv("config", "node", *nodes)

    def config_info(self) -> Invocation:
        return self._inv("config", "info", timeout=30)

    # ------------------------- config generation -------------------------

    def gen_secrets(self, out_file: Path) -> Invocation:
        return self._inv("gen", "secrets", "--output-file", str(out_file))

    def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        *,
        out_dir: Path,
        secrets_file: Path,
        kubernetes_version: str,
        talos_version: str,
    ) -> Invocation:
        return self._inv(
            "gen", "config", cluster_name, endpoint,
            "--output-dir", str(out_dir),
            "--with-secrets", str(secrets_file),
            f"--kubernetes-version={kubernetes_version}",
            f"--talos-version={talos_version}",
            "--force",
        )

    def machineconfig_patch(self, config_file: Path, ops: List[Dict[str, Any]], out_file: Path) -> Invocation:
        return self._inv(
            "machineconfig", "patch", str(config_file),
            "--patch", json.dumps(ops),
            "--output", str(out_file),
        )


def config_info_values(text: str, key: str) -> List[str]:
    """Comma-separated values of one `talosctl config info` line, e.g. key="Endpoints"."""
    for line in text.splitlines():
        name, sep, rest = line.partition(":")
        if sep and name.strip() == key:
            return [v.strip() for v in rest.split(",") if v.strip()]
    return []


def config_info_is(key: str, expected: List[str]) -> Callable[[CommandResult], bool]:
    def _matches(result: CommandResult) -> bool:
        return result.ok and config_info_values(result.stdout, key) == list(expected)

    return _matches


def node_patch_ops(hostname: str, interface: str, install_disk: str, cert_sans: List[str]) -> List[Dict[str, Any]]:
    """JSON patch for a generated machine config: hostname + DHCP, install disk, cert SANs."""
    return [
        {
            "op": "replace",
            "path": "/machine/network",
            "value": {
                "hostname": hostname,
                "interfaces": [{"interface": interface, "dhcp": True}],
            },
        },
        {"op": "replace", "path": "/machine/install/disk", "value": install_disk},
        {"op": "add", "path": "/machine/certSANs", "value": list(cert_sans)},
    ]


def persistent_disk_patch(device: str, mountpoint: str) -> Dict[str, Any]:
    """Strategic-merge machine config patch that mounts `device` at `mountpoint`."""
    return {
        "machine": {
            "disks": [
                {"device": device, "partitions": [{"mountpoint": mountpoint}]},
            ]
        }
    }
