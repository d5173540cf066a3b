# src/talvirt/observers/jsonfile.py
from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from .events import BaseEvent


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class JsonFileObserver:
    """Machine-readable run record: one JSON object per event, numbered in emit order."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = 0

    def notify(self, event: BaseEvent) -> None:
        self._seq += 1
        record = {"seq": self._seq, "type": type(event).__name__, **event.dict()}
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=_encode) + "\n")
