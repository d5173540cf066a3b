# src/talvirt/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    workflow: str     # bootstrap/create-vms/gen-config/...
    cluster: Optional[str]

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(workflow: str, cluster: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "workflow": workflow,
        "cluster": cluster,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a run context with a fresh timestamp."""
    return {**ctx, "ts": _now()}


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    name: str
    index: int
    total: int
    intent: str

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    name: str
    reason: str

@dataclass(frozen=True)
class PollAttempt(BaseEvent):
    name: str
    attempt: int
    max_attempts: int
    ready: bool
    detail: str = ""

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    name: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    name: str
    outcome: str      # "FAILED" | "TIMEOUT" | "CANCELLED"
    fatal: bool
    attempts: int
    error: str
    remediation: Optional[str] = None

@dataclass(frozen=True)
class StepNotAttempted(BaseEvent):
    name: str


# ---------------------------------------------------------------------
# Address reconciliation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class AddressReconciled(BaseEvent):
    role: str
    configured: str
    detected: Optional[str]
    diverged: bool
    detection_failed: bool


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SequenceSummary(BaseEvent):
    state: str
    succeeded: int
    skipped: int
    warnings: int
    failed_step: Optional[str] = None
