from __future__ import annotations
import logging
from .events import BaseEvent

# already carried by every log line / the log file name
_NOISE = ("ts", "run_id", "workflow")


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = {k: v for k, v in event.dict().items() if k not in _NOISE and v not in (None, "")}
        msg = " ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.debug("[EVENT] %s %s", type(event).__name__, msg)
