# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/exporters.py
from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from talvirt.config.models import ExporterSpec
from talvirt.deploy.poller import ReadinessCheck
from talvirt.deploy.sequencer import SequenceReport, Step
from talvirt.errors import LaunchFailure
from talvirt.execution.preflight import require_binaries, require_root
from talvirt.execution.runner import Invocation
from talvirt.template_renderer import TemplateRenderer
from talvirt.workflows.base import Workflow
from talvirt.workflows.download import download_file, extract_member

log = logging.getLogger("talvirt")

BIN_DIR = Path("/usr/local/bin")
UNIT_DIR = Path("/etc/systemd/system")


@dataclass(frozen=True)
class StagedExporter:
    """Files prepared in a scratch directory, ready to be installed."""

    spec: ExporterSpec
    binary: Path
    unit: Path
    config: Optional[Path] = None


def _systemctl(*args: str) -> Invocation:
    return Invocation("systemctl", tuple(args), timeout_seconds=60)


def _install(*args: str) -> Invocation:
    return Invocation("install", tuple(args), timeout_seconds=60)


def unit_context(spec: ExporterSpec, bin_dir: Path = BIN_DIR) -> dict:
    exec_start = " ".join([str(bin_dir / spec.binary), *spec.args])
    return {
        "description": f"Prometheus {spec.name.replace('_', ' ').title()}",
        "user": spec.service_user,
        "exec_start": exec_start,
    }


def stage(
    spec: ExporterSpec,
    workdir: Path,
    *,
    renderer: Optional[TemplateRenderer] = None,
    fetch: Callable[[str, Path], Path] = download_file,
    bin_dir: Path = BIN_DIR,
) -> StagedExporter:
    """Download the release tarball, extract the binary and render the unit (and config)."""
    renderer = renderer or TemplateRenderer()
    archive = fetch(spec.url, workdir / Path(spec.url).name)
    binary = extract_member(archive, spec.binary, workdir)
    unit = renderer.render_to("exporter.service.j2", unit_context(spec, bin_dir), workdir / spec.unit_name)
    config = None
    if spec.config_path:
        config = renderer.render_to(
            "process-exporter-config.yml.j2", {}, workdir / Path(spec.config_path).name
        )
    return StagedExporter(spec=spec, binary=binary, unit=unit, config=config)


def is_installed(wf: Workflow, spec: ExporterSpec, bin_dir: Path = BIN_DIR) -> bool:
    if wf.runner.ctx.dry_run or not (bin_dir / spec.binary).exists():
        return False
    try:
        return wf.runner.run(_systemctl("is-active", "--quiet", spec.unit_name)).ok
    except LaunchFailure:
        return False


def active_check(spec: ExporterSpec) -> Step:
    return Step(
        name=f"{spec.name}-active",
        intent=f"Waiting for {spec.unit_name} to become active...",
        check=ReadinessCheck(
            _systemctl("is-active", "--quiet", spec.unit_name),
            description=f"{spec.unit_name} active",
        ),
        max_attempts=12,
        interval_seconds=5,
        remediation=f"Check the service: journalctl -u {spec.unit_name} -n 50",
    )


def install_steps(
    staged: StagedExporter,
    *,
    bin_dir: Path = BIN_DIR,
    unit_dir: Path = UNIT_DIR,
) -> List[Step]:
    spec = staged.spec
    steps = [
        Step(
            name=f"{spec.name}-binary",
            intent=f"Installing {spec.binary} {spec.version} to {bin_dir}...",
            action=_install("-m", "0755", str(staged.binary), str(bin_dir / spec.binary)),
        )
    ]
    if staged.config is not None and spec.config_path:
        steps.append(
            Step(
                name=f"{spec.name}-config",
                intent=f"Writing {spec.config_path}...",
                action=_install("-D", "-m", "0644", str(staged.config), spec.config_path),
            )
        )
    steps += [
        Step(
            name=f"{spec.name}-unit",
            intent=f"Installing {spec.unit_name}...",
            action=_install("-m", "0644", str(staged.unit), str(unit_dir / spec.unit_name)),
        ),
        Step(
            name=f"{spec.name}-daemon-reload",
            intent="Reloading systemd...",
            action=_systemctl("daemon-reload"),
        ),
        Step(
            name=f"{spec.name}-enable",
            intent=f"Enabling and starting {spec.unit_name}...",
            action=_systemctl("enable", "--now", spec.unit_name),
        ),
        active_check(spec),
    ]
    return steps


def install_exporters(
    wf: Workflow,
    specs: Sequence[ExporterSpec],
    *,
    fetch: Callable[[str, Path], Path] = download_file,
    bin_dir: Path = BIN_DIR,
    unit_dir: Path = UNIT_DIR,
) -> SequenceReport:
    """Install each exporter as a systemd service; already-running ones are only verified."""
    require_root()
    require_binaries(["systemctl", "install"])

    report = SequenceReport()
    for spec in specs:
        print(f"Installing {spec.name} {spec.version} on host...")
        if is_installed(wf, spec, bin_dir):
            print(f"  - {spec.unit_name} already active, verifying only")
            report.merge(wf.sequencer().run([active_check(spec)]))
            continue

        with tempfile.TemporaryDirectory(prefix=f"talvirt-{spec.name}-") as tmpdir:
            workdir = Path(tmpdir)
            if wf.runner.ctx.dry_run:
                staged = StagedExporter(
                    spec=spec,
                    binary=workdir / spec.binary,
                    unit=workdir / spec.unit_name,
                    config=workdir / "config.yml" if spec.config_path else None,
                )
            else:
                staged = stage(spec, workdir, fetch=fetch, bin_dir=bin_dir)
            sub = wf.sequencer().run(install_steps(staged, bin_dir=bin_dir, unit_dir=unit_dir))
        report.merge(sub)
        if sub.exit_code != 0:
            break
        print(f"  Verify with: curl http://localhost:{spec.port}/metrics | head")
    return report
