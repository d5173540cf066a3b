# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/apps.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from talvirt.deploy.poller import ReadinessCheck, has_output_lines
from talvirt.deploy.sequencer import SequenceReport, SequenceState, Step
from talvirt.execution.preflight import require_binaries, require_files
from talvirt.kube.kubectl import ArgoCD, Helm, KubectlError
from talvirt.workflows.base import Workflow

log = logging.getLogger("talvirt")

INITIAL_SECRET = "argocd-initial-admin-secret"


def cilium_values(wf: Workflow) -> Dict[str, str]:
    values = dict(wf.cfg.cilium.values)
    values.setdefault("k8sServiceHost", wf.cfg.controlplane.ip)
    return values


def _project_path(wf: Workflow, rel: str) -> str:
    p = Path(rel)
    return str(p if p.is_absolute() else wf.cfg.paths.project_dir / p)


def build_steps(wf: Workflow) -> List[Step]:
    cfg = wf.cfg
    kubectl = wf.kubectl
    steps: List[Step] = []

    if cfg.cilium.enabled:
        c = cfg.cilium
        steps.append(
            Step(
                name="install-cilium",
                intent="Installing Cilium...",
                action=Helm(cfg.paths.kubeconfig_path).upgrade_install(
                    c.release,
                    c.chart,
                    namespace=c.namespace,
                    repo=c.repo,
                    version=c.version,
                    values=cilium_values(wf),
                ),
                remediation=f"Inspect the release: helm status {c.release} -n {c.namespace}",
            )
        )

    if cfg.argocd.enabled:
        a = cfg.argocd
        steps.append(
            Step(
                name="apply-argocd",
                intent="Applying Argo CD bootstrap...",
                action=kubectl.apply_kustomize(_project_path(wf, a.kustomize_dir)),
            )
        )
        for i, manifest in enumerate(a.app_manifests, start=1):
            steps.append(
                Step(
                    name=f"apply-app-{i}",
                    intent=f"Applying {manifest}...",
                    action=kubectl.apply_file(_project_path(wf, manifest)),
                )
            )
        steps.append(
            Step(
                name="wait-argocd-secret",
                intent="Waiting for the Argo CD initial admin secret...",
                check=ReadinessCheck(
                    kubectl.get_secret_field(a.namespace, INITIAL_SECRET, "password"),
                    description=INITIAL_SECRET,
                    ready_when=has_output_lines(1),
                ),
                max_attempts=cfg.bootstrap.kube_api.max_attempts,
                interval_seconds=cfg.bootstrap.kube_api.interval_seconds,
                fatal=False,
            )
        )
    return steps


def password_steps(wf: Workflow, current: str, new: str) -> List[Step]:
    argocd = ArgoCD(wf.cfg.argocd.namespace, wf.cfg.paths.kubeconfig_path)
    return [
        Step(
            name="argocd-login",
            intent="Logging in to Argo CD...",
            action=argocd.login("admin", current),
            fatal=False,
        ),
        Step(
            name="argocd-update-password",
            intent="Updating the Argo CD admin password...",
            action=argocd.update_password("admin", current, new),
            fatal=False,
        ),
    ]


def rotate_admin_password(wf: Workflow, new_password: str) -> Optional[SequenceReport]:
    """Replace the generated admin password. Returns None when the current one cannot be read."""
    a = wf.cfg.argocd
    try:
        current = wf.kubectl.read_secret_field(wf.runner, a.namespace, INITIAL_SECRET, "password")
    except KubectlError as e:
        log.warning("skipping Argo CD password rotation: %s", e)
        print(f"WARNING: could not read {INITIAL_SECRET}, password not rotated")
        return None
    return wf.sequencer().run(password_steps(wf, current, new_password))


def deploy_apps(wf: Workflow, *, environ: Optional[Mapping[str, str]] = None) -> SequenceReport:
    cfg = wf.cfg
    environ = os.environ if environ is None else environ

    binaries = ["kubectl"]
    if cfg.cilium.enabled:
        binaries.append("helm")
    require_binaries(binaries)
    require_files([cfg.paths.kubeconfig_path], hint="Run: talvirt bootstrap")

    report = wf.sequencer().run(build_steps(wf))
    if report.state in (SequenceState.FAILED_FATAL, SequenceState.CANCELLED):
        return report

    a = cfg.argocd
    new_password = environ.get(a.admin_password_env)
    if not (a.enabled and a.rotate_admin_password):
        return report
    if not new_password:
        print(f"{a.admin_password_env} not set; keeping the generated Argo CD admin password")
        return report
    if wf.runner.ctx.dry_run:
        print("[dry-run] would rotate the Argo CD admin password")
        return report

    require_binaries(["argocd"])
    rotated = rotate_admin_password(wf, new_password)
    if rotated is not None:
        report.merge(rotated)
    return report
