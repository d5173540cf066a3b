# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/talos/configgen.py
from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from talvirt.deploy.sequencer import SequenceReport, SequenceState, Step
from talvirt.execution.preflight import require_binaries
from talvirt.talos.talosctl import TalosCtl, node_patch_ops
from talvirt.template_renderer import TemplateRenderer
from talvirt.workflows.base import Workflow

log = logging.getLogger("talvirt")


def build_steps(wf: Workflow, tmp: Path) -> List[Step]:
    cfg = wf.cfg
    talos_dir = cfg.paths.talos
    # everything below operates on the freshly generated talosconfig in the temp dir
    tctl = TalosCtl(tmp / "talosconfig")
    cp, worker = cfg.controlplane, cfg.worker
    secrets = tmp / "secrets.yaml"

    return [
        Step(
            name="gen-secrets",
            intent="Generating secrets...",
            action=tctl.gen_secrets(secrets),
        ),
        Step(
            name="gen-config",
            intent=f"Generating machine configs for {cfg.name} ({cfg.endpoint})...",
            action=tctl.gen_config(
                cfg.name,
                cfg.endpoint,
                out_dir=tmp,
                secrets_file=secrets,
                kubernetes_version=cfg.talos.kubernetes_version,
                talos_version=cfg.talos.talos_version,
            ),
        ),
        Step(
            name="talosconfig-endpoint",
            intent=f"Setting talosconfig endpoint to {cp.ip}...",
            action=tctl.config_endpoint(cp.ip),
        ),
        Step(
            name="talosconfig-node",
            intent=f"Setting talosconfig node to {cp.ip}...",
            action=tctl.config_node(cp.ip),
        ),
        Step(
            name="patch-controlplane",
            intent="Patching control plane config (hostname, install disk, cert SANs)...",
            action=tctl.machineconfig_patch(
                tmp / "controlplane.yaml",
                node_patch_ops(cp.hostname, cfg.talos.interface, cfg.talos.install_disk, [cp.ip]),
                talos_dir / "controlplane.yaml",
            ),
        ),
        Step(
            name="patch-worker",
            intent="Patching worker config (hostname, install disk, cert SANs)...",
            action=tctl.machineconfig_patch(
                tmp / "worker.yaml",
                node_patch_ops(worker.hostname, cfg.talos.interface, cfg.talos.install_disk, [worker.ip]),
                talos_dir / "worker.yaml",
            ),
        ),
    ]


def render_cluster_reference(wf: Workflow, renderer: Optional[TemplateRenderer] = None) -> Path:
    cfg = wf.cfg
    renderer = renderer or TemplateRenderer()
    return renderer.render_to(
        "cluster.yaml.j2",
        {
            "cluster_name": cfg.name,
            "endpoint": cfg.endpoint,
            "kubernetes_version": cfg.talos.kubernetes_version,
            "talos_version": cfg.talos.talos_version,
            "allow_scheduling": cfg.talos.allow_scheduling_on_control_planes,
            "dns_domain": cfg.talos.dns_domain,
        },
        cfg.paths.talos / "cluster.yaml",
    )


def _install_talosconfig(src: Path, dests: List[Path]) -> None:
    for dest in dests:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        dest.chmod(0o600)
        log.info("talosconfig written to %s", dest)


def generate_configs(wf: Workflow, *, home: Optional[Path] = None) -> SequenceReport:
    """
    Generate secrets and machine configs in a throwaway directory, patch them into
    the project's talos/ directory and install the client talosconfig.
    """
    require_binaries(["talosctl"])
    cfg = wf.cfg
    dry_run = wf.runner.ctx.dry_run
    if not dry_run:
        cfg.paths.talos.mkdir(parents=True, exist_ok=True)

    print("Generating Talos configuration...")
    print(f"Cluster: {cfg.name}")
    print(f"Control Plane IP: {cfg.controlplane.ip}")
    print(f"Worker IP: {cfg.worker.ip}")

    with tempfile.TemporaryDirectory(prefix="talvirt-gen-") as tmpdir:
        tmp = Path(tmpdir)
        report = wf.sequencer().run(build_steps(wf, tmp))
        if report.state is not SequenceState.SUCCEEDED:
            return report

        generated = tmp / "talosconfig"
        if generated.exists():
            home_dir = home or Path.home()
            _install_talosconfig(
                generated,
                [cfg.paths.talosconfig_path, home_dir / ".talos" / "config"],
            )

    if dry_run:
        print(f"\n[dry-run] would render {cfg.paths.talos / 'cluster.yaml'}")
        return report
    render_cluster_reference(wf)

    print("\nTalos configurations generated successfully!")
    print("\nGenerated files:")
    print(f"  - {cfg.paths.talos / 'controlplane.yaml'} (Control Plane)")
    print(f"  - {cfg.paths.talos / 'worker.yaml'} (Worker)")
    print(f"  - {cfg.paths.talos / 'cluster.yaml'} (Cluster config reference)")
    print("\nNext steps:")
    print("  1. Review the generated configs")
    print("  2. Run: sudo talvirt create-vms")
    print("  3. Run: talvirt bootstrap")
    return report
