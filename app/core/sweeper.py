"""
Retention sweeper.

- Artifacts are deleted a fixed TTL after their build completed; the record's
  artifact reference is cleared so download returns 404.
- Terminal records are removed from the registry a fixed TTL after they became
  terminal.
- At startup, artifact files older than the TTL and workspaces left over from
  a crashed run are removed. Younger artifact files are scheduled by mtime.

The clock is injectable and run_once(now) performs a single pass, so time can
be simulated in tests.
"""
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from app.core.metrics import metrics
from app.core.pipeline import WorkspaceManager
from app.core.registry import BuildRegistry

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Owns the artifact deletion schedule and the periodic registry sweep."""

    def __init__(
        self,
        registry: BuildRegistry,
        artifacts_dir: Path,
        workspaces: WorkspaceManager,
        record_ttl_s: float = 3600,
        artifact_ttl_s: float = 3600,
        interval_s: float = 1800,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.registry = registry
        self.artifacts_dir = Path(artifacts_dir)
        self.workspaces = workspaces
        self.record_ttl_s = record_ttl_s
        self.artifact_ttl_s = artifact_ttl_s
        self.interval_s = interval_s
        self._clock = clock or time.time
        self._lock = threading.Lock()
        # build_id -> (artifact path, due time)
        self._scheduled: dict[str, tuple[Path, float]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def schedule_artifact_deletion(self, build_id: str, path: Path, completed_at: float) -> None:
        with self._lock:
            self._scheduled[build_id] = (Path(path), completed_at + self.artifact_ttl_s)

    def scheduled_count(self) -> int:
        with self._lock:
            return len(self._scheduled)

    def run_once(self, now: Optional[float] = None) -> dict[str, int]:
        """One retention pass. Returns counts of deleted artifacts and records."""
        now = self._clock() if now is None else now

        with self._lock:
            due = [
                (build_id, path)
                for build_id, (path, due_at) in self._scheduled.items()
                if due_at <= now
            ]
            for build_id, _ in due:
                del self._scheduled[build_id]

        for build_id, path in due:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"artifact_delete_failed build_id={build_id} error_type={type(e).__name__}")
            self.registry.expire_artifact(build_id)
            metrics.inc("artifacts_expired_total")
            logger.info(f"artifact_expired build_id={build_id}")

        removed = self.registry.sweep(now - self.record_ttl_s)
        return {"artifacts": len(due), "records": len(removed)}

    def purge_stale_artifacts(self, now: Optional[float] = None) -> int:
        """
        Delete artifact files older than the TTL. Returns count deleted.

        Younger files are scheduled for deletion at mtime + TTL, so artifacts
        left by a previous process still expire on time.
        """
        now = self._clock() if now is None else now
        if not self.artifacts_dir.exists():
            return 0

        cutoff = now - self.artifact_ttl_s
        deleted = 0
        scheduled = 0
        for item in self.artifacts_dir.iterdir():
            if not (item.is_file() and item.suffix == ".apk"):
                continue
            mtime = item.stat().st_mtime
            if mtime < cutoff:
                item.unlink(missing_ok=True)
                deleted += 1
            else:
                # Artifacts are named <build_id>.apk
                self.schedule_artifact_deletion(item.stem, item, mtime)
                scheduled += 1

        if deleted > 0 or scheduled > 0:
            logger.info(f"cleanup_artifacts deleted={deleted} scheduled={scheduled}")
        return deleted

    def run_startup_cleanup(self) -> dict[str, int]:
        """Remove stale artifacts and leftover workspaces from a previous run."""
        return {
            "artifacts": self.purge_stale_artifacts(),
            "workspaces": self.workspaces.cleanup_all(),
        }

    # -------------------------------------------------------------------------
    # Background thread
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"sweeper_started interval_s={self.interval_s}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("sweeper_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("sweeper_pass_failed")
