"""
Bounded-concurrency FIFO build queue.

Holds an ordered pending list and an in-flight counter. A task dispatches
immediately when a slot is free, otherwise it waits at the tail. Completion of
any task frees its slot and dispatches the next pending task - progress is
event driven, never polled.

The lock may be shared with the owning registry so that admission decisions
and queue mutations happen under one exclusion scope.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.errors import QuotaError

logger = logging.getLogger(__name__)

Task = Callable[[], None]
Spawn = Callable[[Callable[[], None]], None]


def spawn_thread(target: Callable[[], None]) -> None:
    """Default dispatcher: one daemon worker thread per running task."""
    thread = threading.Thread(target=target, name="build-worker", daemon=True)
    thread.start()


@dataclass
class QueueSlot:
    """A pending task waiting for a free slot."""
    build_id: str
    task: Task


class BuildQueue:
    """FIFO queue that runs at most max_concurrent tasks at once."""

    def __init__(
        self,
        max_concurrent: int = 2,
        max_pending: int = 50,
        lock: Optional[threading.RLock] = None,
        spawn: Optional[Spawn] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        self._max_pending = max_pending
        self._lock = lock if lock is not None else threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._spawn = spawn or spawn_thread
        self._pending: "OrderedDict[str, QueueSlot]" = OrderedDict()
        self._running = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def max_pending(self) -> int:
        return self._max_pending

    @property
    def depth(self) -> int:
        """Number of pending (not yet dispatched) tasks."""
        with self._lock:
            return len(self._pending)

    @property
    def running(self) -> int:
        with self._lock:
            return self._running

    def enqueue(self, build_id: str, task: Task) -> bool:
        """
        Add a task. Returns True if it was dispatched immediately,
        False if it is waiting in the pending list.

        Raises:
            QuotaError: If the pending list is full
        """
        with self._lock:
            if build_id in self._pending:
                raise ValueError(f"Build {build_id} is already queued")

            slot = QueueSlot(build_id=build_id, task=task)

            if self._running < self._max_concurrent and not self._pending:
                self._dispatch(slot)
                return True

            if len(self._pending) >= self._max_pending:
                raise QuotaError(
                    f"Build queue is full ({len(self._pending)}/{self._max_pending})",
                    current=len(self._pending),
                    limit=self._max_pending,
                )

            self._pending[build_id] = slot
            logger.info(f"queue_pending build_id={build_id} position={len(self._pending)}")
            return False

    def remove(self, build_id: str) -> bool:
        """
        Remove a task that has not been dispatched yet.
        Returns False if the task is unknown or already dispatched.
        """
        with self._lock:
            slot = self._pending.pop(build_id, None)
            if slot is None:
                return False
            logger.info(f"queue_removed build_id={build_id}")
            self._idle.notify_all()
            return True

    def is_pending(self, build_id: str) -> bool:
        with self._lock:
            return build_id in self._pending

    def pending_ids(self) -> list[str]:
        """Pending build ids in dispatch order."""
        with self._lock:
            return list(self._pending.keys())

    def status(self) -> dict:
        """Snapshot of {running, queued, maxConcurrent} taken under the lock."""
        with self._lock:
            return {
                "running": self._running,
                "queued": len(self._pending),
                "maxConcurrent": self._max_concurrent,
            }

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is running or pending. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(
                lambda: self._running == 0 and not self._pending,
                timeout=timeout,
            )

    # -------------------------------------------------------------------------
    # Internals (called with the lock held)
    # -------------------------------------------------------------------------

    def _dispatch(self, slot: QueueSlot) -> None:
        self._running += 1
        logger.info(f"queue_dispatch build_id={slot.build_id} running={self._running}")
        try:
            self._spawn(lambda: self._run(slot))
        except Exception:
            self._running -= 1
            raise

    def _run(self, slot: QueueSlot) -> None:
        try:
            slot.task()
        except Exception:
            logger.exception(f"queue_task_failed build_id={slot.build_id}")
        finally:
            self._on_done(slot.build_id)

    def _on_done(self, build_id: str) -> None:
        with self._lock:
            self._running -= 1
            logger.info(f"queue_done build_id={build_id} running={self._running}")
            if self._pending and self._running < self._max_concurrent:
                _, next_slot = self._pending.popitem(last=False)
                try:
                    self._dispatch(next_slot)
                except Exception:
                    # Keep the slot at the head so a later completion retries it
                    self._pending[next_slot.build_id] = next_slot
                    self._pending.move_to_end(next_slot.build_id, last=False)
                    logger.exception(f"queue_dispatch_failed build_id={next_slot.build_id}")
            if self._running == 0 and not self._pending:
                self._idle.notify_all()
