# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/bootstrap.py
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import List, Tuple

from talvirt.deploy.poller import ReadinessCheck
from talvirt.deploy.sequencer import SequenceReport, SequenceState, Step
from talvirt.execution.preflight import require_binaries, require_files
from talvirt.execution.runner import Invocation
from talvirt.network.reconcile import (
    CONTROL_PLANE,
    WORKER,
    AddressReconciler,
    NodeAddress,
    reconcile_nodes,
)
from talvirt.talos.talosctl import config_info_is
from talvirt.workflows.base import Workflow

log = logging.getLogger("talvirt")


@dataclass(frozen=True)
class BootstrapTargets:
    controlplane: str
    worker: str


def ping(address: str) -> Invocation:
    return Invocation("ping", ("-c", "1", "-W", "2", address), timeout_seconds=10)


def reconcile_addresses(wf: Workflow) -> List[NodeAddress]:
    """Configured node addresses checked against what libvirt reports for each domain."""
    cfg = wf.cfg
    virsh = wf.virsh
    source = cfg.network.lease_source
    pairs: List[Tuple[NodeAddress, Invocation]] = [
        (NodeAddress(CONTROL_PLANE, cfg.controlplane.ip), virsh.domifaddr(cfg.controlplane.name, source)),
        (NodeAddress(WORKER, cfg.worker.ip), virsh.domifaddr(cfg.worker.name, source)),
    ]
    reconciler = AddressReconciler(wf.runner, bus=wf.bus, run_ctx=wf.run_ctx)
    return reconcile_nodes(reconciler, pairs)


def resolve_targets(wf: Workflow, *, detect: bool = True) -> BootstrapTargets:
    """
    Node addresses to talk to: the configured ones, replaced by what libvirt's
    DHCP leases report when detection works.
    """
    cfg = wf.cfg
    if not detect or wf.runner.ctx.dry_run or shutil.which("virsh") is None:
        return BootstrapTargets(cfg.controlplane.ip, cfg.worker.ip)

    cp, worker = reconcile_addresses(wf)
    return BootstrapTargets(cp.effective, worker.effective)


def build_steps(wf: Workflow, targets: BootstrapTargets) -> List[Step]:
    cfg = wf.cfg
    bs = cfg.bootstrap
    talos = wf.talosctl
    kubectl = wf.kubectl
    talos_dir = cfg.paths.talos
    kubeconfig = cfg.paths.kubeconfig_path
    cp, worker = targets.controlplane, targets.worker
    cp_domain = cfg.controlplane.name

    return [
        Step(
            name="apply-controlplane-config",
            intent="Applying machine configuration to control plane...",
            action=talos.apply_config(cp, talos_dir / "controlplane.yaml", insecure=True),
            skip_if=ReadinessCheck(
                talos.service_status(cp, "etcd"),
                description="control plane already configured",
            ),
            remediation=f"Check the node is in maintenance mode: virsh console {cp_domain}",
        ),
        Step(
            name="apply-worker-config",
            intent="Applying machine configuration to worker...",
            action=talos.apply_config(worker, talos_dir / "worker.yaml", insecure=True),
            skip_if=ReadinessCheck(
                talos.version(worker),
                description="worker already configured",
            ),
            settle_seconds=bs.apply_settle_seconds,
            remediation=f"Check the node is in maintenance mode: virsh console {cfg.worker.name}",
        ),
        Step(
            name="wait-etcd",
            intent="Waiting for control plane node to be ready...",
            check=ReadinessCheck(talos.service_status(cp, "etcd"), description="etcd service"),
            max_attempts=bs.etcd.max_attempts,
            interval_seconds=bs.etcd.interval_seconds,
            remediation=(
                f"Check VM console: virsh console {cp_domain}\n"
                f"Check VM IP: virsh domifaddr {cp_domain}"
            ),
        ),
        Step(
            name="talosctl-endpoint",
            intent=f"Setting talosctl endpoint to {cp}...",
            action=talos.config_endpoint(cp),
            skip_if=ReadinessCheck(
                talos.config_info(),
                description=f"talosctl endpoint already {cp}",
                ready_when=config_info_is("Endpoints", [cp]),
            ),
        ),
        Step(
            name="talosctl-node",
            intent=f"Setting talosctl node to {cp}...",
            action=talos.config_node(cp),
            skip_if=ReadinessCheck(
                talos.config_info(),
                description=f"talosctl node already {cp}",
                ready_when=config_info_is("Nodes", [cp]),
            ),
        ),
        Step(
            name="bootstrap-etcd",
            intent="Bootstrapping cluster...",
            action=talos.bootstrap(cp),
            skip_if=ReadinessCheck(
                talos.etcd_members(cp),
                description="etcd already bootstrapped",
            ),
        ),
        Step(
            name="wait-kube-api",
            intent="Waiting for Kubernetes API to be ready...",
            check=ReadinessCheck(talos.kubeconfig(cp, kubeconfig), description="Kubernetes API"),
            max_attempts=bs.kube_api.max_attempts,
            interval_seconds=bs.kube_api.interval_seconds,
            fatal_on_timeout=False,
        ),
        Step(
            name="fetch-kubeconfig",
            intent="Generating kubeconfig...",
            action=talos.kubeconfig(cp, kubeconfig),
            skip_if=ReadinessCheck(kubectl.get_nodes(), description="kubeconfig already valid"),
            remediation=f"Check the API server: talosctl -n {cp} service kubelet status",
        ),
        Step(
            name="wait-worker-reachable",
            intent="Waiting for worker node...",
            check=ReadinessCheck(ping(worker), description=f"worker {worker} reachable"),
            max_attempts=bs.worker_reachable.max_attempts,
            interval_seconds=bs.worker_reachable.interval_seconds,
            fatal=bs.strict_join,
        ),
        Step(
            name="wait-nodes-joined",
            intent="Waiting for nodes to appear in Kubernetes...",
            check=kubectl.nodes_joined(1),
            max_attempts=bs.nodes_joined.max_attempts,
            interval_seconds=bs.nodes_joined.interval_seconds,
            fatal=bs.strict_join,
        ),
    ]


def bootstrap_cluster(wf: Workflow, *, detect_addresses: bool = True) -> SequenceReport:
    """Apply machine configs, bootstrap etcd and fetch the kubeconfig."""
    cfg = wf.cfg
    require_binaries(["talosctl", "kubectl"])
    require_files([cfg.paths.talosconfig_path], hint="Run: talvirt gen-config")
    require_files(
        [cfg.paths.talos / "controlplane.yaml", cfg.paths.talos / "worker.yaml"],
        hint="Run: talvirt gen-config",
    )

    targets = resolve_targets(wf, detect=detect_addresses)
    report = wf.sequencer().run(build_steps(wf, targets))
    if report.state in (SequenceState.FAILED_FATAL, SequenceState.CANCELLED):
        return report

    kubeconfig = cfg.paths.kubeconfig_path
    if kubeconfig.exists():
        kubeconfig.chmod(0o600)

    print("\nBootstrap complete!")
    if not wf.runner.ctx.dry_run:
        nodes = wf.runner.run(wf.kubectl.get_nodes())
        print("\nCluster Status:")
        print(nodes.stdout.rstrip() if nodes.ok else f"  (kubectl get nodes failed: {nodes.detail()})")
    print("\nTo use kubectl:")
    print(f"  export KUBECONFIG={kubeconfig}")
    print("  kubectl get pods --all-namespaces")
    print("\nTo access Talos nodes:")
    print(f"  talosctl -n {targets.controlplane} status")
    print(f"  talosctl -n {targets.worker} status")
    return report
