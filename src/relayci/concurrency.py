# concurrency.py
# Concurrency-group bookkeeping and cooperative cancellation.
#
# The group registry is the only state shared across runs. Every read and
# write goes through ConcurrencyGroupManager._lock, so admit() is atomic
# and admissions for one key are totally ordered.

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .errors import RelayCIError

if TYPE_CHECKING:
    from .model import Run


class CancelledError(RelayCIError):
    """Raised by CancellationToken.raise_if_cancelled()."""


class CancellationToken:
    """
    Cooperative cancellation flag passed into job runners and executors.

    Nothing is interrupted: holders check `cancelled` at job/step
    boundaries and stop starting new work.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()
        self._children: List[CancellationToken] = []
        self._timer: threading.Timer | None = None
        if parent is not None:
            parent._adopt(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError(self._reason or "cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def child(self, timeout: float | None = None) -> "CancellationToken":
        """A token cancelled with this one, or on its own after `timeout` seconds."""
        token = CancellationToken(parent=self)
        if timeout is not None and timeout > 0:
            timer = threading.Timer(timeout, token.cancel, args=(f"timed out after {timeout:g}s",))
            timer.daemon = True
            token._timer = timer
            timer.start()
        return token

    def close(self) -> None:
        """Stop a pending deadline timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            reason = self._reason or "cancelled"
        child.cancel(reason)


@dataclass(frozen=True)
class Admission:
    admitted: bool
    cancelled: Tuple["Run", ...] = ()
    queued: bool = False

    @property
    def cancelled_run_id(self) -> str | None:
        return self.cancelled[0].id if self.cancelled else None


class ConcurrencyGroupManager:
    """
    Registry: group key -> the one non-terminal run allowed for that key.

    With cancel_in_progress the newest run wins and the occupant is
    cancelled before the newcomer is registered. Without it the newcomer
    waits in a single-slot queue; a newer arrival replaces (and cancels)
    the queued one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, Run] = {}
        self._queued: Dict[str, Run] = {}

    def admit(self, group_key: str, run: Run, cancel_in_progress: bool = True) -> Admission:
        with self._lock:
            cancelled: List[Run] = []
            occupant = self._active.get(group_key)
            busy = occupant is not None and not occupant.is_terminal

            if busy and not cancel_in_progress:
                previous = self._queued.get(group_key)
                self._queued[group_key] = run
                if previous is not None and previous.cancel(superseded_by=run.id):
                    cancelled.append(previous)
                return Admission(admitted=False, cancelled=tuple(cancelled), queued=True)

            # occupant may have finished since the is_terminal check
            if busy and occupant.cancel(superseded_by=run.id):
                cancelled.append(occupant)
            stale = self._queued.pop(group_key, None)
            if stale is not None and stale.cancel(superseded_by=run.id):
                cancelled.append(stale)
            self._active[group_key] = run
            return Admission(admitted=True, cancelled=tuple(cancelled))

    def release(self, group_key: str, run: Run) -> Optional[Run]:
        """
        Drop `run` from the registry once it is terminal.

        Returns the queued run promoted to occupant, if any; the caller
        is responsible for starting it.
        """
        with self._lock:
            if self._active.get(group_key) is not run:
                return None
            del self._active[group_key]
            nxt = self._queued.pop(group_key, None)
            if nxt is not None and nxt.is_terminal:
                nxt = None
            if nxt is not None:
                self._active[group_key] = nxt
            return nxt

    def occupant(self, group_key: str) -> Optional[Run]:
        with self._lock:
            return self._active.get(group_key)

    def queued(self, group_key: str) -> Optional[Run]:
        with self._lock:
            return self._queued.get(group_key)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return {key: run.id for key, run in self._active.items()}
