"""
In-memory build registry and build state machine.

The registry is the single owner of build records. Every read-then-mutate
decision (admission, cancel, state flips) runs under one RLock, which the
build queue shares, so admission checks, record creation and enqueue are
one atomic unit.

State machine:
    queued -> building -> complete | failed
    queued -> cancelled
Terminal states are never left.
"""
import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.auth import Identity
from app.core.build_queue import BuildQueue, Spawn, Task
from app.core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    OwnershipError,
    QuotaError,
)
from app.core.gatekeeper import BuildConfig
from app.schemas.build import BuildStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BuildStatus.QUEUED: frozenset({BuildStatus.BUILDING, BuildStatus.CANCELLED}),
    BuildStatus.BUILDING: frozenset({BuildStatus.COMPLETE, BuildStatus.FAILED}),
}

# Default limit for list_for()
LIST_LIMIT = 50


def format_timestamp(ts: Optional[float]) -> Optional[str]:
    """Epoch seconds to ISO 8601 UTC, or None."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class BuildRecord:
    """One build job. Mutated only through BuildRegistry."""
    id: str
    owner: str
    config: BuildConfig
    status: BuildStatus = BuildStatus.QUEUED
    progress: int = 0
    logs: list[str] = field(default_factory=list)
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    artifact_path: Optional[str] = None
    artifact_size: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BuildRegistry:
    """Authoritative store of build records and their transitions."""

    def __init__(
        self,
        max_concurrent: int = 2,
        max_queue_depth: int = 50,
        max_active_per_identity: int = 3,
        spawn: Optional[Spawn] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._lock = threading.RLock()
        self._records: dict[str, BuildRecord] = {}
        self._clock = clock or time.time
        self.max_active_per_identity = max_active_per_identity
        self.queue = BuildQueue(
            max_concurrent=max_concurrent,
            max_pending=max_queue_depth,
            lock=self._lock,
            spawn=spawn,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def active_count(self, owner: str) -> int:
        """Number of non-terminal records owned by owner."""
        with self._lock:
            return sum(
                1 for r in self._records.values()
                if r.owner == owner and not r.is_terminal
            )

    def admit(
        self,
        identity: Identity,
        config: BuildConfig,
        task_factory: Callable[[str], Task],
    ) -> BuildRecord:
        """
        Atomically check quotas, create a queued record and enqueue its task.

        Args:
            identity: Submitting caller (admin bypasses the per-identity cap)
            config: Validated build config
            task_factory: Called with the new build id, returns the task to run

        Raises:
            QuotaError: Per-identity cap or queue bound reached
        """
        with self._lock:
            if not identity.is_admin:
                active = self.active_count(identity.key)
                if active >= self.max_active_per_identity:
                    raise QuotaError(
                        f"Too many active builds ({active}/{self.max_active_per_identity})",
                        current=active,
                        limit=self.max_active_per_identity,
                    )

            depth = self.queue.depth
            if depth >= self.queue.max_pending:
                raise QuotaError(
                    f"Build queue is full ({depth}/{self.queue.max_pending})",
                    current=depth,
                    limit=self.queue.max_pending,
                )

            build_id = str(uuid.uuid4())
            record = BuildRecord(
                id=build_id,
                owner=identity.key,
                config=config,
                created_at=self._clock(),
            )
            self._records[build_id] = record

            try:
                self.queue.enqueue(build_id, task_factory(build_id))
            except Exception:
                del self._records[build_id]
                raise

            logger.info(f"build_admitted build_id={build_id} owner={identity.short}")
            return copy.deepcopy(record)

    # -------------------------------------------------------------------------
    # Executor transitions
    # -------------------------------------------------------------------------

    def _require(self, build_id: str) -> BuildRecord:
        record = self._records.get(build_id)
        if record is None:
            raise NotFoundError("Build not found")
        return record

    def _transition(self, record: BuildRecord, target: BuildStatus) -> None:
        if target not in ALLOWED_TRANSITIONS.get(record.status, frozenset()):
            raise InvalidTransition(record.id, record.status.value, target.value)
        record.status = target

    def begin(self, build_id: str) -> BuildRecord:
        """queued -> building."""
        with self._lock:
            record = self._require(build_id)
            self._transition(record, BuildStatus.BUILDING)
            record.started_at = self._clock()
            record.progress = max(record.progress, 5)
            return copy.deepcopy(record)

    def set_progress(self, build_id: str, progress: int) -> None:
        """Raise the progress floor. Never decreases."""
        with self._lock:
            record = self._require(build_id)
            if record.is_terminal:
                return
            record.progress = max(record.progress, min(int(progress), 100))

    def append_log(self, build_id: str, message: str) -> None:
        """Append a timestamped line. Terminal records are closed."""
        with self._lock:
            record = self._records.get(build_id)
            if record is None or record.is_terminal:
                return
            stamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%H:%M:%S")
            record.logs.append(f"[{stamp}] {message}")
        logger.info(f"build_log {message}", extra={"build_id": build_id})

    def complete(self, build_id: str, artifact_path: str, artifact_size: int) -> BuildRecord:
        """building -> complete."""
        with self._lock:
            record = self._require(build_id)
            self._transition(record, BuildStatus.COMPLETE)
            record.progress = 100
            record.completed_at = self._clock()
            record.artifact_path = artifact_path
            record.artifact_size = artifact_size
            return copy.deepcopy(record)

    def fail(self, build_id: str, error: str) -> BuildRecord:
        """building -> failed. Failed records never reference an artifact."""
        with self._lock:
            record = self._require(build_id)
            self._transition(record, BuildStatus.FAILED)
            record.completed_at = self._clock()
            record.error = error
            record.artifact_path = None
            record.artifact_size = None
            return copy.deepcopy(record)

    # -------------------------------------------------------------------------
    # Caller operations
    # -------------------------------------------------------------------------

    def _owned(self, build_id: str, identity: Identity) -> BuildRecord:
        record = self._require(build_id)
        if not identity.can_access(record.owner):
            logger.warning(f"build_access_denied build_id={build_id} caller={identity.short}")
            raise OwnershipError()
        return record

    def get(self, build_id: str, identity: Identity) -> BuildRecord:
        """Snapshot of a record the caller owns (admin: any)."""
        with self._lock:
            return copy.deepcopy(self._owned(build_id, identity))

    def cancel(self, build_id: str, identity: Identity) -> BuildRecord:
        """
        Cancel a queued build. The record is flipped to cancelled and removed.

        Raises:
            ConflictError: If the build has already been dispatched or finished
        """
        with self._lock:
            record = self._owned(build_id, identity)
            if record.status != BuildStatus.QUEUED or not self.queue.remove(build_id):
                raise ConflictError(
                    f"Cannot cancel build in status: {record.status.value}",
                    status=record.status.value,
                )
            self._transition(record, BuildStatus.CANCELLED)
            record.completed_at = self._clock()
            del self._records[build_id]

        logger.info(f"build_cancelled build_id={build_id} caller={identity.short}")
        return copy.deepcopy(record)

    def list_for(self, identity: Identity, limit: int = LIST_LIMIT) -> list[BuildRecord]:
        """Records visible to the caller, newest first."""
        with self._lock:
            visible = [
                r for r in self._records.values()
                if identity.can_access(r.owner)
            ]
            visible.sort(key=lambda r: r.created_at, reverse=True)
            return [copy.deepcopy(r) for r in visible[:limit]]

    def queue_status(self) -> dict:
        return self.queue.status()

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def expire_artifact(self, build_id: str) -> None:
        """Clear a record's artifact reference after its file was deleted."""
        with self._lock:
            record = self._records.get(build_id)
            if record is not None:
                record.artifact_path = None

    def sweep(self, cutoff: float) -> list[str]:
        """Remove terminal records that became terminal before cutoff."""
        with self._lock:
            expired = [
                r.id for r in self._records.values()
                if r.is_terminal and r.completed_at is not None and r.completed_at < cutoff
            ]
            for build_id in expired:
                del self._records[build_id]

        if expired:
            logger.info(f"registry_swept count={len(expired)}")
        return expired
