"""
Build service - wires the gatekeeper, identity layer, registry, executor,
sweeper and stats into the operations exposed over HTTP.

One instance per process (see get_build_service()).
"""
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from app.core.auth import ADMIN, CredentialStore, Identity, constant_time_compare, verify_proof
from app.core.build_queue import Spawn
from app.core.config import ServiceConfig, get_service_config
from app.core.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    QuotaError,
    ValidationError,
)
from app.core.gatekeeper import download_filename, validate_archive, validate_build_config
from app.core.metrics import metrics
from app.core.pipeline import PipelineExecutor, WorkspaceManager
from app.core.registry import BuildRecord, BuildRegistry, format_timestamp
from app.core.stats import StatsStore
from app.core.sweeper import RetentionSweeper
from app.core.toolchain import CapacitorToolchain
from app.db.database import get_session_factory
from app.schemas.build import BuildStatus

logger = logging.getLogger(__name__)

# Log lines returned by the status endpoint
STATUS_LOG_TAIL = 20


class BuildService:
    """Owns every component of the build orchestration engine."""

    def __init__(
        self,
        config: ServiceConfig,
        session_factory=None,
        toolchain=None,
        spawn: Optional[Spawn] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        session_factory = session_factory or get_session_factory()

        self.credentials = CredentialStore(session_factory)
        self.stats = StatsStore(session_factory)
        self.registry = BuildRegistry(
            max_concurrent=config.max_concurrent_builds,
            max_queue_depth=config.max_queue_depth,
            max_active_per_identity=config.max_active_builds_per_user,
            spawn=spawn,
            clock=clock,
        )
        self.workspaces = WorkspaceManager(config.workspaces_dir)
        self.sweeper = RetentionSweeper(
            registry=self.registry,
            artifacts_dir=config.artifacts_dir,
            workspaces=self.workspaces,
            record_ttl_s=config.record_ttl_s,
            artifact_ttl_s=config.artifact_ttl_s,
            interval_s=config.sweep_interval_s,
            clock=clock,
        )
        self.executor = PipelineExecutor(
            registry=self.registry,
            workspaces=self.workspaces,
            artifacts_dir=config.artifacts_dir,
            toolchain=toolchain or CapacitorToolchain(config),
            timeout_s=config.build_timeout_s,
            on_finished=self._on_finished,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def startup(self) -> None:
        """Load counters, purge leftovers from a previous run, start the sweeper."""
        self.config.workspaces_dir.mkdir(parents=True, exist_ok=True)
        self.config.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self.stats.init()
        cleaned = self.sweeper.run_startup_cleanup()
        logger.info(
            f"startup_cleanup artifacts={cleaned['artifacts']} workspaces={cleaned['workspaces']}"
        )
        self.sweeper.start()

    def shutdown(self, timeout: float = 5.0) -> None:
        self.sweeper.stop(timeout=timeout)

    # =========================================================================
    # Identity
    # =========================================================================

    def authenticate(self, credential: Optional[str]) -> Optional[Identity]:
        """Resolve the admin key or a principal token to an identity."""
        if not credential:
            return None
        if self.config.admin_enabled and constant_time_compare(credential, self.config.admin_api_key):
            return ADMIN
        pubkey = self.credentials.authenticate(credential)
        if pubkey is None:
            return None
        return Identity(pubkey=pubkey)

    def exchange_proof(self, auth_header: Optional[str], url: str, method: str) -> dict[str, Any]:
        """Verify a delegated proof and return the principal's token."""
        try:
            pubkey = verify_proof(auth_header, url, method, max_skew=self.config.auth_max_skew_s)
        except AuthError as e:
            metrics.inc("auth_failures_total")
            logger.warning(f"auth_proof_rejected reason={e.message.split(':')[0]!r}")
            raise

        token, is_new = self.credentials.get_or_create(pubkey)
        metrics.inc("auth_exchanges_total")
        return {
            "success": True,
            "apiKey": token,
            "pubkey": pubkey,
            "isNew": is_new,
            "message": "API key generated successfully" if is_new else "Existing API key returned",
        }

    def revoke(self, identity: Identity) -> None:
        if identity.is_admin:
            raise ValidationError("auth", "Admin credentials cannot be revoked")
        if not self.credentials.revoke(identity.pubkey):
            raise NotFoundError("No API key found for this identity")

    # =========================================================================
    # Builds
    # =========================================================================

    def submit(self, identity: Identity, archive_bytes: Optional[bytes], config_json: Optional[str]) -> BuildRecord:
        """
        Validate a submission and admit it to the queue.

        Raises:
            ValidationError: Bad archive or config (nothing allocated)
            QuotaError: Per-identity cap or queue bound reached
        """
        try:
            if not config_json:
                raise ValidationError("config", "Build config required")
            try:
                raw_config = json.loads(config_json)
            except (json.JSONDecodeError, TypeError):
                raise ValidationError("config", "Invalid config JSON")

            archive = validate_archive(archive_bytes or b"")
            config = validate_build_config(raw_config)

            record = self.registry.admit(
                identity,
                config,
                lambda build_id: lambda: self.executor.run(build_id, archive),
            )
        except (ValidationError, QuotaError) as e:
            metrics.inc("builds_rejected_total")
            logger.warning(f"build_rejected caller={identity.short} error_code={e.error_code}")
            raise

        self.stats.record_submitted()
        metrics.inc("builds_submitted_total")
        logger.info(
            f"build_queued build_id={record.id} owner={identity.short} "
            f"files={archive.file_count} build_type={config.build_type.value}"
        )
        return record

    def get_build(self, build_id: str, identity: Identity) -> BuildRecord:
        return self.registry.get(build_id, identity)

    def status_view(self, build_id: str, identity: Identity) -> dict[str, Any]:
        """Status payload with the most recent log lines."""
        record = self.registry.get(build_id, identity)
        return {
            "id": record.id,
            "status": record.status,
            "progress": record.progress,
            "error": record.error,
            "config": record.config.summary(),
            "createdAt": format_timestamp(record.created_at),
            "completedAt": format_timestamp(record.completed_at),
            "apkSize": record.artifact_size if record.status == BuildStatus.COMPLETE else None,
            "logs": record.logs[-STATUS_LOG_TAIL:],
        }

    def read_artifact(self, build_id: str, identity: Identity) -> tuple[bytes, str]:
        """
        Return (apk bytes, download filename) for a complete build.

        Raises:
            ConflictError: Build is not complete
            NotFoundError: Artifact expired or missing
        """
        record = self.registry.get(build_id, identity)
        if record.status != BuildStatus.COMPLETE:
            raise ConflictError("Build not complete", status=record.status.value)
        if not record.artifact_path:
            raise NotFoundError("APK file not found (may have been cleaned up)")

        try:
            data = Path(record.artifact_path).read_bytes()
        except FileNotFoundError:
            raise NotFoundError("APK file not found (may have been cleaned up)")

        return data, download_filename(record.config.app_name)

    def cancel(self, build_id: str, identity: Identity) -> BuildRecord:
        record = self.registry.cancel(build_id, identity)
        self.stats.record_cancelled()
        metrics.inc("builds_cancelled_total")
        return record

    def list_builds(self, identity: Identity) -> list[BuildRecord]:
        return self.registry.list_for(identity)

    def service_stats(self) -> dict[str, Any]:
        data = self.stats.get_stats()
        data["queue"] = self.registry.queue_status()
        data["activeBuilds"] = len(self.registry)
        return data

    # =========================================================================
    # Internals
    # =========================================================================

    def _on_finished(self, record: BuildRecord) -> None:
        """Called by the executor once a build reached a terminal state."""
        if record.status == BuildStatus.COMPLETE:
            self.stats.record_success()
            metrics.inc("builds_completed_total")
            self.sweeper.schedule_artifact_deletion(record.id, Path(record.artifact_path), record.completed_at)
        else:
            self.stats.record_failed()
            metrics.inc("builds_failed_total")


_build_service: Optional[BuildService] = None


def get_build_service() -> BuildService:
    """Process-wide service, created on first use."""
    global _build_service
    if _build_service is None:
        _build_service = BuildService(get_service_config())
    return _build_service
