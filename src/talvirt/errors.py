# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/errors.py
from __future__ import annotations

from typing import Optional


class TalvirtError(RuntimeError):
    """Base class for provisioning failures."""


class PreconditionMissing(TalvirtError):
    """A required binary, file or privilege is missing. Raised before any state change."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class LaunchFailure(TalvirtError):
    """The external program could not be started (not found, permission denied)."""

    def __init__(self, program: str, reason: str):
        super().__init__(f"failed to launch {program!r}: {reason}")
        self.program = program
        self.reason = reason


class NonZeroExit(TalvirtError):
    """The external program ran but reported failure."""

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        detail = f"\n{stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"command failed (rc={returncode}): {command}{detail}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class PollTimeout(TalvirtError):
    """A readiness poll exhausted its attempt budget."""

    def __init__(self, description: str, attempts: int, last_detail: str = ""):
        super().__init__(f"{description}: not ready after {attempts} attempts")
        self.description = description
        self.attempts = attempts
        self.last_detail = last_detail


class OperationCancelled(TalvirtError):
    """The run was cancelled externally (SIGINT/SIGTERM)."""


class AddressParseError(TalvirtError):
    """Hypervisor address output could not be parsed."""


class ConfigError(TalvirtError):
    """The cluster configuration file is missing or invalid."""


class DownloadError(TalvirtError):
    """An artifact (ISO, exporter tarball) could not be downloaded or unpacked."""
