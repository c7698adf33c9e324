"""
Peer Events
===========

[EVENTS] DHT engines report every peer found by a lookup as a PeerEvent.
Listeners are plain or async callables; they run on the event loop in
subscription order. A failing listener is logged and the rest still run.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerEvent:
    """A peer ``addr`` serves swarm ``info_hash``."""

    addr: Tuple[str, int]
    info_hash: bytes

    @property
    def object_id(self) -> str:
        return self.info_hash.hex()


PeerListener = Callable[[PeerEvent], Any]


class PeerEventBus:
    """Fan-out of PeerEvents to subscribed listeners."""

    def __init__(self):
        self._listeners: List[PeerListener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: PeerListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: PeerListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    async def emit(self, event: PeerEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"[EVENTS] Peer listener failed for {event.object_id}")
