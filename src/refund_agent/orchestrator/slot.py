from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..domain.errors import SlotBusy
from ..logging import get_logger

LOG = get_logger("orchestrator-slot")


@dataclass
class CurrentOperation:
    name: str
    started: float = field(default_factory=time.time)
    cancel: threading.Event = field(default_factory=threading.Event)


class TaskSlot:
    """Holds at most one long-running operation.

    A second `acquire` while the slot is taken raises `SlotBusy` naming the
    running operation. The holder's `cancel` event is handed to the batch so
    it can be stopped between items.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Optional[CurrentOperation] = None

    @property
    def current(self) -> Optional[CurrentOperation]:
        with self._lock:
            return self._current

    @property
    def busy(self) -> bool:
        return self.current is not None

    @contextmanager
    def acquire(self, name: str) -> Iterator[CurrentOperation]:
        with self._lock:
            if self._current is not None:
                raise SlotBusy(self._current.name)
            op = CurrentOperation(name)
            self._current = op
        LOG.info(f"Slot taken by {name}")
        try:
            yield op
        finally:
            with self._lock:
                self._current = None
            LOG.info(f"Slot released by {name} after {time.time() - op.started:.1f}s")

    def cancel(self) -> bool:
        """Signal the running operation to stop; False when nothing is running."""
        with self._lock:
            if self._current is None:
                return False
            self._current.cancel.set()
            return True
