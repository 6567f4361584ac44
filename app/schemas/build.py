"""
Pydantic schemas for the build API, plus the status/type enums shared with
the core.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class BuildStatus(str, Enum):
    """Build lifecycle status."""
    QUEUED = "queued"
    BUILDING = "building"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BuildStatus.COMPLETE, BuildStatus.FAILED, BuildStatus.CANCELLED})


class BuildType(str, Enum):
    """Gradle build variant."""
    DEBUG = "debug"
    RELEASE = "release"

    @property
    def gradle_task(self) -> str:
        return "assembleRelease" if self is BuildType.RELEASE else "assembleDebug"


# =============================================================================
# Response Schemas
# =============================================================================

class BuildSubmitResponse(BaseModel):
    """Response for POST /api/build."""
    buildId: str
    status: BuildStatus = BuildStatus.QUEUED
    message: str = "Build queued successfully"


class BuildConfigSummary(BaseModel):
    """Public view of a build's config (no icon bytes)."""
    appName: str
    packageId: str
    buildType: str


class BuildStatusResponse(BaseModel):
    """Response for GET /api/build/{id}/status."""
    id: str
    status: BuildStatus
    progress: int = Field(ge=0, le=100)
    error: Optional[str] = None
    config: BuildConfigSummary
    createdAt: str
    completedAt: Optional[str] = None
    apkSize: Optional[int] = None
    logs: List[str]


class BuildLogsResponse(BaseModel):
    """Response for GET /api/build/{id}/logs."""
    id: str
    status: BuildStatus
    logs: List[str]


class BuildListItem(BaseModel):
    """One entry of GET /api/builds."""
    id: str
    status: BuildStatus
    appName: str
    packageId: str
    progress: int
    createdAt: str
    completedAt: Optional[str] = None


class BuildListResponse(BaseModel):
    builds: List[BuildListItem]


class CancelResponse(BaseModel):
    message: str = "Build cancelled"


class QueueStatus(BaseModel):
    running: int
    queued: int
    maxConcurrent: int


class ServiceStatsResponse(BaseModel):
    """Response for GET /api/stats (admin)."""
    totalBuilds: int
    successfulBuilds: int
    failedBuilds: int
    cancelledBuilds: int
    startedAt: Optional[str] = None
    lastBuildAt: Optional[str] = None
    queue: QueueStatus
    activeBuilds: int
