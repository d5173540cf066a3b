# src/talvirt/observers/console.py
from __future__ import annotations

from .events import (
    AddressReconciled,
    BaseEvent,
    PollAttempt,
    SequenceSummary,
    StepFailed,
    StepNotAttempted,
    StepSkipped,
    StepStarted,
    StepSucceeded,
)


class ConsoleObserver:
    """
    Operator-facing output: intent, outcome and remediation for every step,
    in the same register as the shell scripts it replaces.
    """

    def __init__(self, show_attempts: bool = True):
        self.show_attempts = show_attempts

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StepStarted):
            print(f"\n[{event.index}/{event.total}] {event.intent}")
        elif isinstance(event, StepSkipped):
            print(f"  - skipped: {event.reason}")
        elif isinstance(event, PollAttempt):
            if self.show_attempts and not event.ready:
                print(f"  Waiting... ({event.attempt}/{event.max_attempts})")
        elif isinstance(event, StepSucceeded):
            print(f"✓ {event.name} ({event.duration_ms / 1000:.1f}s)")
        elif isinstance(event, StepFailed):
            if event.fatal:
                print(f"ERROR: {event.name} {event.outcome.lower()}: {event.error}")
                if event.remediation:
                    print("")
                    print("Debugging:")
                    for line in event.remediation.splitlines():
                        print(f"  {line}")
            else:
                print(f"WARNING: {event.name} {event.outcome.lower()}: {event.error}, continuing anyway...")
        elif isinstance(event, StepNotAttempted):
            print(f"  - not attempted: {event.name}")
        elif isinstance(event, AddressReconciled):
            if event.detection_failed:
                print(f"WARNING: Could not detect {event.role} IP, using configured {event.configured}")
            elif event.diverged:
                print(f"  {event.role}: expected {event.configured}, detected {event.detected} (using detected)")
            else:
                print(f"  {event.role}: {event.configured} (matches lease)")
        elif isinstance(event, SequenceSummary):
            line = (
                f"\n{event.workflow}: {event.state} "
                f"(succeeded={event.succeeded} skipped={event.skipped} warnings={event.warnings})"
            )
            if event.failed_step:
                line += f" failed at '{event.failed_step}'"
            print(line)
