"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent

# Substrings that mark an environment variable as secret.
# Matching variables never reach toolchain subprocesses.
SECRET_ENV_MARKERS = (
    "API_KEY",
    "ADMIN_API_KEY",
    "SECRET",
    "PASSWORD",
    "TOKEN",
    "PRIVATE",
    "CREDENTIAL",
)


@dataclass(frozen=True)
class ServiceConfig:
    """Build service configuration (immutable)."""
    data_dir: Path
    workspaces_dir: Path
    artifacts_dir: Path
    admin_api_key: Optional[str] = None  # Never logged
    max_concurrent_builds: int = 2
    max_queue_depth: int = 50
    max_active_builds_per_user: int = 3
    build_timeout_s: float = 600.0
    record_ttl_s: int = 3600
    artifact_ttl_s: int = 3600
    sweep_interval_s: int = 1800
    auth_max_skew_s: int = 60
    public_base_url: str = ""
    cors_origins: tuple[str, ...] = ("*",)
    java_home: str = "/usr/lib/jvm/java-17-openjdk-amd64"
    android_home: str = "/opt/android-sdk"
    log_level: str = "INFO"
    port: int = 3000

    @property
    def admin_enabled(self) -> bool:
        """Admin access requires a configured shared secret."""
        return bool(self.admin_api_key)

    @property
    def database_path(self) -> Path:
        return self.data_dir / "build-service.db"


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"config_invalid_int name={name}")
        return default
    if value <= 0:
        logger.warning(f"config_non_positive name={name}")
        return default
    return value


def get_service_config() -> ServiceConfig:
    """Load service configuration from environment."""
    data_dir = Path(os.getenv("BUILD_DATA_DIR", str(PROJECT_ROOT / "data")))
    workspaces_dir = Path(os.getenv("BUILD_WORKSPACES_DIR", str(data_dir / "workspaces")))
    artifacts_dir = Path(os.getenv("BUILD_ARTIFACTS_DIR", str(data_dir / "artifacts")))

    cors = os.getenv("CORS_ORIGINS", "*")
    cors_origins = tuple(o.strip() for o in cors.split(",") if o.strip()) or ("*",)

    return ServiceConfig(
        data_dir=data_dir,
        workspaces_dir=workspaces_dir,
        artifacts_dir=artifacts_dir,
        admin_api_key=os.getenv("ADMIN_API_KEY") or None,
        max_concurrent_builds=_env_int("MAX_CONCURRENT_BUILDS", 2),
        max_queue_depth=_env_int("MAX_QUEUE_DEPTH", 50),
        max_active_builds_per_user=_env_int("MAX_ACTIVE_BUILDS_PER_USER", 3),
        build_timeout_s=_env_int("BUILD_TIMEOUT_MS", 600_000) / 1000.0,
        record_ttl_s=_env_int("BUILD_RECORD_TTL_S", 3600),
        artifact_ttl_s=_env_int("ARTIFACT_TTL_S", 3600),
        sweep_interval_s=_env_int("SWEEP_INTERVAL_S", 1800),
        auth_max_skew_s=_env_int("AUTH_MAX_SKEW_S", 60),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
        cors_origins=cors_origins,
        java_home=os.getenv("JAVA_HOME", "/usr/lib/jvm/java-17-openjdk-amd64"),
        android_home=os.getenv("ANDROID_HOME", "/opt/android-sdk"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        port=_env_int("PORT", 3000),
    )
