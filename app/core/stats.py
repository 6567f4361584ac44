"""
Durable build counters.

Stored as a single row in SQLite; every mutation commits before returning so a
crash never loses a counted event.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from app.db.models import ServiceStats

logger = logging.getLogger(__name__)

STATS_ROW_ID = 1


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StatsStore:
    """submitted / succeeded / failed / cancelled counters."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def _row(self, db) -> ServiceStats:
        row = db.get(ServiceStats, STATS_ROW_ID)
        if row is None:
            row = ServiceStats(
                id=STATS_ROW_ID,
                total_builds=0,
                successful_builds=0,
                failed_builds=0,
                cancelled_builds=0,
            )
            db.add(row)
        return row

    def _update(self, increment: Optional[str] = None, **values) -> None:
        with self._lock:
            db = self._session_factory()
            try:
                row = self._row(db)
                if increment:
                    setattr(row, increment, (getattr(row, increment) or 0) + 1)
                for name, value in values.items():
                    setattr(row, name, value)
                db.commit()
            finally:
                db.close()

    def init(self) -> None:
        """
        Load the counters row, creating it on first boot.

        started_at is stamped once, when the row is created; counters and the
        start time carry over from previous runs.
        """
        with self._lock:
            db = self._session_factory()
            try:
                row = self._row(db)
                if row.started_at is None:
                    row.started_at = _now_iso()
                db.commit()
                started_at = row.started_at
            finally:
                db.close()
        logger.info(f"stats_loaded started_at={started_at}")

    def record_submitted(self, when: Optional[str] = None) -> None:
        self._update(increment="total_builds", last_build_at=when or _now_iso())

    def record_success(self) -> None:
        self._update(increment="successful_builds")

    def record_failed(self) -> None:
        self._update(increment="failed_builds")

    def record_cancelled(self) -> None:
        self._update(increment="cancelled_builds")

    def get_stats(self) -> dict[str, Any]:
        db = self._session_factory()
        try:
            row = db.get(ServiceStats, STATS_ROW_ID)
            if row is None:
                return {
                    "totalBuilds": 0,
                    "successfulBuilds": 0,
                    "failedBuilds": 0,
                    "cancelledBuilds": 0,
                    "startedAt": None,
                    "lastBuildAt": None,
                }
            return {
                "totalBuilds": row.total_builds,
                "successfulBuilds": row.successful_builds,
                "failedBuilds": row.failed_builds,
                "cancelledBuilds": row.cancelled_builds,
                "startedAt": row.started_at,
                "lastBuildAt": row.last_build_at,
            }
        finally:
            db.close()
