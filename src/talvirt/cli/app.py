# src/talvirt/cli/app.py
from __future__ import annotations

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import typer

from talvirt.config.loader import load_config
from talvirt.config.models import ClusterConfig
from talvirt.deploy.sequencer import SequenceReport
from talvirt.errors import ConfigError, DownloadError, OperationCancelled, PreconditionMissing
from talvirt.execution.context import CancelToken, ExecutionContext
from talvirt.execution.runner import CommandRunner
from talvirt.logging.log import init_logging
from talvirt.observers.console import ConsoleObserver
from talvirt.observers.jsonfile import JsonFileObserver
from talvirt.observers.logger import LoggerObserver
from talvirt.talos.configgen import generate_configs
from talvirt.workflows.apps import deploy_apps
from talvirt.workflows.base import Workflow
from talvirt.workflows.bootstrap import bootstrap_cluster, reconcile_addresses
from talvirt.workflows.exporters import install_exporters
from talvirt.workflows.storage import add_persistent_disk
from talvirt.workflows.vms import create_vms


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Provision a Talos Kubernetes cluster on libvirt VMs")

EXPORTER_ALIASES = {
    "node": "node_exporter",
    "process": "process_exporter",
}

ConfigOpt = typer.Option(None, "--config", "-c", help="Cluster config YAML (defaults are built in)")
DryRunOpt = typer.Option(False, "--dry-run", help="Print commands instead of running them")
DebugOpt = typer.Option(False, "--debug", help="Verbose console logging")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _install_signal_handlers(token: CancelToken) -> None:
    def _handler(signum, _frame):
        token.cancel(f"received {signal.Signals(signum).name}")

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


@contextmanager
def _session(
    workflow: str,
    config: Optional[Path],
    dry_run: bool,
    debug: bool,
    *,
    customize: Optional[Callable[[ClusterConfig], ClusterConfig]] = None,
) -> Iterator[Workflow]:
    """
    Load config, set up logging/observers and yield a Workflow.
    Known failures become exit codes here; anything else propagates.
    """
    try:
        cfg = load_config(config)
    except ConfigError as e:
        typer.secho(f"ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if customize is not None:
        cfg = customize(cfg)

    logger, run_id, log_path = init_logging(verbose=debug, workflow=workflow)
    typer.echo("================================================")
    typer.secho(f"talvirt {workflow}", bold=True)
    typer.echo(f"  Cluster : {cfg.name}")
    typer.echo(f"  Run ID  : {run_id}")
    typer.echo(f"  Logs    : {log_path}")
    if dry_run:
        typer.echo("  Mode    : dry-run")
    typer.echo("================================================")

    ctx = ExecutionContext(dry_run=dry_run)
    _install_signal_handlers(ctx.cancel)

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(log_path.parent / f"{run_id}.jsonl"),
    ]
    wf = Workflow(cfg=cfg, runner=CommandRunner(ctx), name=workflow, observers=observers, run_id=run_id)

    try:
        yield wf
    except PreconditionMissing as e:
        typer.secho(f"ERROR: {e}", fg=typer.colors.RED, err=True)
        if e.hint:
            typer.echo(e.hint, err=True)
        raise typer.Exit(1)
    except (ConfigError, DownloadError) as e:
        logger.error("%s", e)
        typer.secho(f"ERROR: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except OperationCancelled as e:
        typer.secho(f"Cancelled: {e}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(130)


def _finish(report: SequenceReport) -> None:
    code = report.exit_code
    if code:
        raise typer.Exit(code)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command("gen-config")
def gen_config(
    config: Optional[Path] = ConfigOpt,
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Generate Talos secrets, machine configs and the client talosconfig."""
    with _session("gen-config", config, dry_run, debug) as wf:
        report = generate_configs(wf)
    _finish(report)


@app.command("create-vms")
def create_vms_cmd(
    config: Optional[Path] = ConfigOpt,
    gpu_pci: Optional[str] = typer.Option(None, "--gpu-pci", help="PCI address passed through to the worker"),
    keep_existing: bool = typer.Option(False, "--keep-existing", help="Do not recreate VMs that already exist"),
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Prepare libvirt (daemon, bridge, ISO) and create the Talos VMs. Requires root."""

    def _with_gpu(cfg: ClusterConfig) -> ClusterConfig:
        if not gpu_pci:
            return cfg
        return cfg.model_copy(update={"worker": cfg.worker.model_copy(update={"gpu_pci": gpu_pci})})

    with _session("create-vms", config, dry_run, debug, customize=_with_gpu) as wf:
        report = create_vms(wf, recreate=not keep_existing)
    _finish(report)


@app.command()
def bootstrap(
    config: Optional[Path] = ConfigOpt,
    no_detect: bool = typer.Option(False, "--no-detect", help="Use configured IPs, skip DHCP lease lookup"),
    strict: bool = typer.Option(False, "--strict", help="Fail if the worker never joins"),
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Apply machine configs, bootstrap etcd and fetch the kubeconfig."""

    def _strict(cfg: ClusterConfig) -> ClusterConfig:
        if not strict:
            return cfg
        return cfg.model_copy(update={"bootstrap": cfg.bootstrap.model_copy(update={"strict_join": True})})

    with _session("bootstrap", config, dry_run, debug, customize=_strict) as wf:
        report = bootstrap_cluster(wf, detect_addresses=not no_detect)
    _finish(report)


@app.command("add-persistent-disk")
def add_persistent_disk_cmd(
    config: Optional[Path] = ConfigOpt,
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Mount the persistent disk on both nodes (nodes reboot)."""
    with _session("add-persistent-disk", config, dry_run, debug) as wf:
        report = add_persistent_disk(wf)
    _finish(report)


@app.command("deploy-apps")
def deploy_apps_cmd(
    config: Optional[Path] = ConfigOpt,
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Install Cilium and Argo CD, then apply the app-of-apps manifests."""
    with _session("deploy-apps", config, dry_run, debug) as wf:
        report = deploy_apps(wf)
    _finish(report)


@app.command("install-exporters")
def install_exporters_cmd(
    config: Optional[Path] = ConfigOpt,
    only: Optional[List[str]] = typer.Option(None, "--only", help="node and/or process (default: both)"),
    dry_run: bool = DryRunOpt,
    debug: bool = DebugOpt,
):
    """Install Prometheus exporters on the host as systemd services. Requires root."""
    with _session("install-exporters", config, dry_run, debug) as wf:
        names = [EXPORTER_ALIASES.get(o, o) for o in only] if only else [e.name for e in wf.cfg.exporters]
        try:
            specs = [wf.cfg.exporter(n) for n in names]
        except KeyError as e:
            raise typer.BadParameter(f"unknown exporter: {e.args[0]}", param_hint="--only")
        report = install_exporters(wf, specs)
    _finish(report)


@app.command("reconcile-ips")
def reconcile_ips(
    config: Optional[Path] = ConfigOpt,
    debug: bool = DebugOpt,
):
    """Compare configured node IPs with the addresses libvirt's DHCP leases report."""
    with _session("reconcile-ips", config, False, debug) as wf:
        nodes = reconcile_addresses(wf)
    typer.echo("")
    for node in nodes:
        typer.echo(f"{node.role:<14} expected={node.configured:<16} detected={node.detected or '-'}")


if __name__ == "__main__":
    app()
