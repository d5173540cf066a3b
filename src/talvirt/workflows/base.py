# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/base.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from talvirt.config.models import ClusterConfig
from talvirt.deploy.poller import ReadinessPoller
from talvirt.deploy.sequencer import Sequencer
from talvirt.execution.runner import CommandRunner
from talvirt.kube.kubectl import Kubectl
from talvirt.observers.dispatcher import EventBus
from talvirt.observers.events import new_ctx
from talvirt.talos.talosctl import TalosCtl
from talvirt.virt.libvirt import Virsh

log = logging.getLogger("talvirt")


@dataclass
class Workflow:
    """
    Everything a workflow needs, passed explicitly: config, runner, event bus.
    `sleep`/`clock` are injectable so tests never wait for real.
    """

    cfg: ClusterConfig
    runner: CommandRunner
    name: str = "run"
    observers: List = field(default_factory=list)
    run_id: Optional[str] = None
    sleep: Optional[Callable[[float], Optional[bool]]] = None
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self.bus = EventBus(self.observers)
        self.run_ctx: Dict = new_ctx(workflow=self.name, cluster=self.cfg.name, run_id=self.run_id)

    def sequencer(self) -> Sequencer:
        poller = ReadinessPoller(self.runner, sleep=self.sleep, clock=self.clock)
        return Sequencer(
            self.runner,
            poller=poller,
            bus=self.bus,
            run_ctx=self.run_ctx,
            sleep=self.sleep,
            clock=self.clock,
        )

    @property
    def talosctl(self) -> TalosCtl:
        return TalosCtl(self.cfg.paths.talosconfig_path)

    @property
    def kubectl(self) -> Kubectl:
        return Kubectl(self.cfg.paths.kubeconfig_path)

    @property
    def virsh(self) -> Virsh:
        return Virsh(self.cfg.network.libvirt_uri)
