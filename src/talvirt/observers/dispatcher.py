# src/talvirt/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import Iterable, List, Optional, Protocol
from .events import BaseEvent

log = logging.getLogger("talvirt")


class Observer(Protocol):
    def notify(self, event: BaseEvent) -> None: ...


class EventBus:
    def __init__(self, observers: Optional[Iterable[Observer]] = None):
        self._observers: List[Observer] = list(observers or [])

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception:
                # observers must not break a provisioning run
                log.debug("observer %r failed on %s", ob, event.__class__.__name__, exc_info=True)
