# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/talvirt/logging/log.py

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def default_log_dir() -> Path:
    override = os.environ.get("TALVIRT_LOG_DIR")
    return Path(override) if override else Path.home() / ".talvirt" / "logs"


def _drop_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "talvirt",
    verbose: bool = False,
    workflow: str = "run",
) -> tuple[logging.Logger, str, Path]:
    """
    Set up logging for one CLI invocation.

    Each run gets a fresh run_id and its own file holding the full command
    trace. The console handler stays at WARNING (the console observer prints
    step progress); --debug lowers it to DEBUG.

    Returns (logger, run_id, log_path); observers reuse the run_id.
    """
    run_id = str(uuid.uuid4())
    base_dir = base_dir or default_log_dir()
    base_dir.mkdir(parents=True, exist_ok=True)

    started = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{workflow}-{started}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    _drop_handlers(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler, level in (
        (logging.FileHandler(log_path), logging.DEBUG),
        (logging.StreamHandler(), logging.DEBUG if verbose else logging.WARNING),
    ):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.info("=== talvirt %s started (run_id=%s) ===", workflow, run_id)
    logger.debug("log_file=%s", log_path)
    return logger, run_id, log_path
