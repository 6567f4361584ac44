"""
Pipeline executor - drives one build through the toolchain stages.

Security:
- No shell=True anywhere; every command is an argv list
- Each command runs in its own process group so a timeout kills the whole tree
- Secret-bearing environment variables never reach subprocesses
- Private working directory per build, removed on success and on failure

All stages share one wall-clock deadline. A command's timeout is the smaller
of its stage timeout and the time left on the deadline.
"""
import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from app.core.config import SECRET_ENV_MARKERS
from app.core.errors import BuildServiceError, PipelineError
from app.core.gatekeeper import BuildConfig, ValidatedArchive

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Output kept per stream (tail)
MAX_OUTPUT_CHARS = 64 * 1024

# Grace period between SIGTERM and SIGKILL
KILL_GRACE_S = 5.0

# Progress checkpoints outside the stage list
PROGRESS_EXTRACT = 10
PROGRESS_LOCATE = 90
PROGRESS_CLEANUP = 95


# =============================================================================
# Safe Command Execution
# =============================================================================

@dataclass
class CommandResult:
    """Result of a subprocess command."""
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def diagnostic(self) -> str:
        return self.stderr.strip() or self.stdout.strip()


def sanitize_env(environ: Mapping[str, str], extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """
    Copy an environment without any variable whose name marks it as secret,
    then overlay the toolchain variables.
    """
    safe_env = {
        key: value
        for key, value in environ.items()
        if not any(marker in key.upper() for marker in SECRET_ENV_MARKERS)
    }
    if extra:
        safe_env.update(extra)
    return safe_env


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return f"... (truncated, {len(text)} total chars)\n" + text[-MAX_OUTPUT_CHARS:]


def _kill_process_group(proc: subprocess.Popen) -> None:
    """SIGTERM the process group, then SIGKILL after the grace period."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: float,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """
    Execute a command with no shell in a new process group.

    Args:
        cmd: Command as list of strings (NO shell=True!)
        cwd: Working directory
        timeout: Timeout in seconds
        env: Complete subprocess environment

    Returns:
        CommandResult with output and status

    Raises:
        FileNotFoundError: If the executable does not exist
    """
    if not isinstance(cmd, list) or not cmd:
        raise ValueError("Command must be a non-empty list")

    start_time = time.monotonic()
    timed_out = False

    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning(f"command_timeout cmd={cmd[0]} timeout={timeout:.1f}")
        _kill_process_group(proc)
        stdout, stderr = proc.communicate()

    duration_ms = int((time.monotonic() - start_time) * 1000)

    return CommandResult(
        command=cmd,
        exit_code=proc.returncode if not timed_out else -1,
        stdout=_truncate(stdout.decode("utf-8", errors="replace")),
        stderr=_truncate(stderr.decode("utf-8", errors="replace")),
        duration_ms=duration_ms,
        timed_out=timed_out,
    )


# =============================================================================
# Stages
# =============================================================================

@dataclass
class StageContext:
    """Everything a stage action needs for one build."""
    build_id: str
    workdir: Path
    config: BuildConfig
    env: dict[str, str]
    deadline: float  # time.monotonic() value
    log: Callable[[str], None]
    stage: Optional["Stage"] = None

    @property
    def dist_dir(self) -> Path:
        return self.workdir / "dist"

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def run(self, cmd: list[str], cwd: Optional[Path] = None, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a toolchain command under the shared deadline.

        Raises:
            PipelineError: On timeout, missing executable or non-zero exit
        """
        stage_name = self.stage.name if self.stage else "command"
        remaining = self.remaining()
        if remaining <= 0:
            raise PipelineError(stage_name, "Build timed out", timed_out=True)

        limit = timeout if timeout is not None else (self.stage.timeout if self.stage else None)
        effective = remaining if limit is None else min(limit, remaining)

        try:
            result = run_command(cmd, cwd=cwd or self.workdir, timeout=effective, env=self.env)
        except FileNotFoundError:
            raise PipelineError(stage_name, f"Command not found: {cmd[0]}")

        if result.timed_out:
            raise PipelineError(
                stage_name,
                f"Command timed out after {effective:.0f}s",
                diagnostic=result.diagnostic,
                timed_out=True,
            )
        if result.exit_code != 0:
            raise PipelineError(
                stage_name,
                f"Command failed with exit code {result.exit_code}",
                diagnostic=result.diagnostic,
            )
        return result


@dataclass
class Stage:
    """One step of the toolchain pipeline."""
    name: str
    progress: int
    message: str
    action: Callable[[StageContext], None]
    timeout: Optional[float] = None  # None = remaining deadline
    best_effort: bool = False


# =============================================================================
# Workspace Management
# =============================================================================

class WorkspaceManager:
    """Manages private working directories for builds."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, build_id: str) -> Path:
        return self._base_dir / build_id

    def create_workspace(self, build_id: str) -> Path:
        workspace = self.path_for(build_id)
        workspace.mkdir(parents=True, exist_ok=True)
        logger.info(f"workspace_created build_id={build_id}")
        return workspace

    def cleanup_workspace(self, build_id: str) -> bool:
        workspace = self.path_for(build_id)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"workspace_cleaned build_id={build_id}")
            return True
        return False

    def cleanup_all(self, keep: frozenset = frozenset()) -> int:
        """Remove every workspace not in keep. Used for crash leftovers."""
        if not self._base_dir.exists():
            return 0
        deleted = 0
        for item in self._base_dir.iterdir():
            if item.is_dir() and item.name not in keep:
                shutil.rmtree(item, ignore_errors=True)
                deleted += 1
        if deleted:
            logger.info(f"cleanup_workspaces deleted={deleted}")
        return deleted


# =============================================================================
# Executor
# =============================================================================

class PipelineExecutor:
    """Runs one dispatched build from extraction to artifact."""

    def __init__(
        self,
        registry,
        workspaces: WorkspaceManager,
        artifacts_dir: Path,
        toolchain,
        timeout_s: float = 600.0,
        on_finished: Optional[Callable] = None,
    ):
        self.registry = registry
        self.workspaces = workspaces
        self.artifacts_dir = Path(artifacts_dir)
        self.toolchain = toolchain
        self.timeout_s = timeout_s
        self.on_finished = on_finished

    def artifact_path_for(self, build_id: str) -> Path:
        return self.artifacts_dir / f"{build_id}.apk"

    def run(self, build_id: str, archive: ValidatedArchive) -> None:
        """Execute a build. Never raises for build failures; they are recorded."""
        record = self.registry.begin(build_id)
        log = lambda message: self.registry.append_log(build_id, message)  # noqa: E731
        log("Starting build...")

        deadline = time.monotonic() + self.timeout_s
        artifact_path = self.artifact_path_for(build_id)

        try:
            size = self._execute(build_id, record.config, archive, artifact_path, deadline, log)
        except Exception as e:
            self.workspaces.cleanup_workspace(build_id)
            artifact_path.unlink(missing_ok=True)

            if isinstance(e, BuildServiceError):
                message = e.message
                logger.warning(f"build_failed build_id={build_id} error_type={type(e).__name__}")
            else:
                logger.exception(f"build_crashed build_id={build_id}")
                message = f"Unexpected error: {type(e).__name__}"

            log(f"Build failed: {message}")
            final = self.registry.fail(build_id, message)
        else:
            log(f"Build complete! APK size: {size / 1024 / 1024:.2f} MB")
            final = self.registry.complete(build_id, str(artifact_path), size)
            logger.info(f"build_complete build_id={build_id} size={size}")

        if self.on_finished:
            self.on_finished(final)

    def _execute(
        self,
        build_id: str,
        config: BuildConfig,
        archive: ValidatedArchive,
        artifact_path: Path,
        deadline: float,
        log: Callable[[str], None],
    ) -> int:
        workdir = self.workspaces.create_workspace(build_id)

        self.registry.set_progress(build_id, PROGRESS_EXTRACT)
        log("Extracting project files...")
        archive.extract_to(workdir)

        dist = workdir / "dist"
        if not (dist / "index.html").is_file():
            raise PipelineError("extract", "No index.html found in dist folder. Build the web project first.")
        file_count = sum(1 for p in dist.rglob("*") if p.is_file())
        log(f"Found {file_count} files in dist folder")

        ctx = StageContext(
            build_id=build_id,
            workdir=workdir,
            config=config,
            env=sanitize_env(os.environ, self.toolchain.environment()),
            deadline=deadline,
            log=log,
        )

        for stage in self.toolchain.stages(config):
            if ctx.remaining() <= 0:
                raise PipelineError(stage.name, "Build timed out", timed_out=True)

            self.registry.set_progress(build_id, stage.progress)
            log(stage.message)
            logger.info(f"stage_started stage={stage.name}", extra={"build_id": build_id, "stage": stage.name})
            ctx.stage = stage
            try:
                stage.action(ctx)
            except Exception as e:
                if stage.best_effort and ctx.remaining() > 0:
                    log(f"Warning: {stage.name} step skipped: {e}")
                    continue
                if isinstance(e, BuildServiceError):
                    raise
                if isinstance(e, OSError):
                    raise PipelineError(stage.name, f"{type(e).__name__}: {e.strerror or e}")
                raise

        self.registry.set_progress(build_id, PROGRESS_LOCATE)
        log("Gradle build complete, locating APK...")
        produced = self.toolchain.locate_artifact(workdir, config)

        # Copy before the workdir is removed
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(produced, artifact_path)
        size = artifact_path.stat().st_size

        self.registry.set_progress(build_id, PROGRESS_CLEANUP)
        log("Cleaning up build files...")
        self.workspaces.cleanup_workspace(build_id)
        return size
