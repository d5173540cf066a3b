# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/network/reconcile.py
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from talvirt.errors import AddressParseError, LaunchFailure
from talvirt.execution.runner import CommandRunner, Invocation
from talvirt.observers.dispatcher import EventBus
from talvirt.observers.events import AddressReconciled, new_ctx, stamp

log = logging.getLogger("talvirt")

CONTROL_PLANE = "control-plane"
WORKER = "worker"


@dataclass(frozen=True)
class NodeAddress:
    role: str
    configured: str
    detected: Optional[str] = None

    @property
    def effective(self) -> str:
        return self.detected or self.configured


@dataclass(frozen=True)
class ReconcileResult:
    role: str
    address: str
    configured: str
    detected: Optional[str]
    diverged: bool
    detection_failed: bool
    warning: Optional[str] = None


def parse_address_literal(value: str) -> str:
    """
    Validate an address literal, tolerating a CIDR suffix ("192.168.1.5/24").
    Raises AddressParseError if it is not a valid IPv4/IPv6 address.
    """
    raw = value.strip().split("/", 1)[0]
    try:
        return str(ipaddress.ip_address(raw))
    except ValueError as e:
        raise AddressParseError(f"not an IP address: {value!r}") from e


def parse_domifaddr(text: str) -> List[str]:
    """
    Parse `virsh domifaddr` output:

        Name       MAC address          Protocol     Address
       -------------------------------------------------------------------------------
        vnet0      52:54:00:12:34:56    ipv4         192.168.122.76/24

    Returns usable addresses, IPv4 first. Loopback and link-local addresses are
    dropped. Raises AddressParseError when the table is malformed or empty.
    """
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        raise AddressParseError("empty domifaddr output")

    header = lines[0].split()
    if not header or header[0] != "Name" or "Address" not in header:
        raise AddressParseError(f"unexpected domifaddr header: {lines[0]!r}")

    v4: List[str] = []
    v6: List[str] = []
    for line in lines[1:]:
        if set(line.strip()) == {"-"}:
            continue
        parts = line.split()
        # continuation rows (extra addresses on the same interface) omit name/MAC
        if len(parts) >= 4:
            proto, addr = parts[2], parts[3]
        elif len(parts) == 3 and parts[0] == "-":
            proto, addr = parts[1], parts[2]
        elif len(parts) == 2:
            proto, addr = parts[0], parts[1]
        else:
            raise AddressParseError(f"malformed domifaddr row: {line!r}")

        ip = ipaddress.ip_address(parse_address_literal(addr))
        if ip.is_loopback or ip.is_link_local:
            continue
        (v4 if proto == "ipv4" or ip.version == 4 else v6).append(str(ip))

    found = v4 + v6
    if not found:
        raise AddressParseError("no usable address in domifaddr output")
    return found


class AddressReconciler:
    """
    Compare configured node addresses with what the hypervisor's DHCP leases report.
    Detection problems never fail the run; they fall back to the configured address.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
    ):
        self.runner = runner
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(workflow="reconcile", cluster=None)

    def detect(self, detection: Invocation) -> str:
        result = self.runner.run(detection)
        if not result.ok:
            raise AddressParseError(f"detection command failed ({result.detail()})")
        return parse_domifaddr(result.stdout)[0]

    def reconcile(self, role: str, configured: str, detection: Invocation) -> ReconcileResult:
        configured = parse_address_literal(configured)
        try:
            detected = self.detect(detection)
        except (AddressParseError, LaunchFailure) as e:
            warning = f"Could not detect {role} IP ({e}); using configured {configured}"
            log.warning(warning)
            result = ReconcileResult(
                role=role,
                address=configured,
                configured=configured,
                detected=None,
                diverged=False,
                detection_failed=True,
                warning=warning,
            )
        else:
            diverged = detected != configured
            if diverged:
                log.warning("%s: expected %s, detected %s", role, configured, detected)
            result = ReconcileResult(
                role=role,
                address=detected,
                configured=configured,
                detected=detected,
                diverged=diverged,
                detection_failed=False,
            )

        self.bus.emit(
            AddressReconciled(
                **stamp(self.run_ctx),
                role=role,
                configured=result.configured,
                detected=result.detected,
                diverged=result.diverged,
                detection_failed=result.detection_failed,
            )
        )
        return result

    def reconcile_node(self, node: NodeAddress, detection: Invocation) -> NodeAddress:
        res = self.reconcile(node.role, node.configured, detection)
        return replace(node, detected=res.detected)


def reconcile_nodes(
    reconciler: AddressReconciler,
    nodes: Sequence[Tuple[NodeAddress, Invocation]],
) -> List[NodeAddress]:
    """Reconcile each (address, detection command) pair; order is preserved."""
    return [reconciler.reconcile_node(node, detection) for node, detection in nodes]
