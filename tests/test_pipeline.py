"""
Tests for the pipeline executor, subprocess runner and environment filtering.

The fake toolchain runs real subprocesses (sys.executable -c ...), so process
groups, deadlines and the sanitized environment are exercised end to end.
"""
import os
import sys
import time
from unittest.mock import patch

import pytest

from conftest import FAKE_APK, FakeToolchain, build_zip
from app.core.auth import Identity
from app.core.gatekeeper import BuildConfig, validate_archive
from app.core.pipeline import (
    PipelineExecutor,
    Stage,
    WorkspaceManager,
    run_command,
    sanitize_env,
)
from app.core.registry import BuildRegistry
from app.schemas.build import BuildStatus, BuildType

OWNER = Identity(pubkey="a" * 64)


@pytest.fixture
def archive():
    return validate_archive(build_zip({
        "dist/index.html": "<html></html>",
        "dist/js/app.js": "x",
    }))


def run_build(tmp_path, archive, toolchain, timeout_s=30.0, config=None):
    """Admit one build and run it synchronously. Returns (record, finished)."""
    spawned = []
    registry = BuildRegistry(max_concurrent=1, spawn=spawned.append)
    finished = []
    executor = PipelineExecutor(
        registry=registry,
        workspaces=WorkspaceManager(tmp_path / "workspaces"),
        artifacts_dir=tmp_path / "artifacts",
        toolchain=toolchain,
        timeout_s=timeout_s,
        on_finished=finished.append,
    )
    config = config or BuildConfig(app_name="Test App", package_id="com.example.test")
    record = registry.admit(OWNER, config, lambda build_id: lambda: executor.run(build_id, archive))
    spawned.pop(0)()
    return registry.get(record.id, OWNER), finished


class TestSanitizeEnv:
    """Secret-bearing variables never reach subprocesses."""

    def test_secret_names_removed(self):
        environ = {
            "PATH": "/usr/bin",
            "HOME": "/root",
            "ADMIN_API_KEY": "x",
            "OPENAI_API_KEY": "x",
            "db_password": "x",
            "GITHUB_TOKEN": "x",
            "MY_SECRET_VALUE": "x",
            "SSH_PRIVATE_KEY": "x",
            "AWS_CREDENTIALS_FILE": "x",
        }
        env = sanitize_env(environ)
        assert env == {"PATH": "/usr/bin", "HOME": "/root"}

    def test_toolchain_vars_overlaid(self):
        env = sanitize_env({"PATH": "/usr/bin", "JAVA_HOME": "/old"}, {"JAVA_HOME": "/new", "ANDROID_HOME": "/sdk"})
        assert env["JAVA_HOME"] == "/new"
        assert env["ANDROID_HOME"] == "/sdk"


class TestRunCommand:
    """No shell, captured output, process group killed on timeout."""

    def test_captures_output(self, tmp_path):
        result = run_command([sys.executable, "-c", "print('hello')"], cwd=tmp_path, timeout=30)
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.timed_out is False

    def test_nonzero_exit(self, tmp_path):
        result = run_command(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
            cwd=tmp_path, timeout=30,
        )
        assert result.exit_code == 3
        assert result.diagnostic == "bad"

    def test_timeout_kills_process(self, tmp_path):
        start = time.monotonic()
        result = run_command([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout=0.5)
        assert result.timed_out is True
        assert time.monotonic() - start < 15

    def test_rejects_string_command(self, tmp_path):
        with pytest.raises(ValueError):
            run_command("echo hi", cwd=tmp_path, timeout=5)


class TestExecutor:
    """Full build lifecycle against the fake toolchain."""

    def test_successful_build(self, tmp_path, archive):
        record, finished = run_build(tmp_path, archive, FakeToolchain())

        assert record.status == BuildStatus.COMPLETE
        assert record.progress == 100
        assert record.artifact_size == len(FAKE_APK)
        artifact = tmp_path / "artifacts" / f"{record.id}.apk"
        assert record.artifact_path == str(artifact)
        assert artifact.read_bytes() == FAKE_APK
        # Workdir removed after the copy
        assert not (tmp_path / "workspaces" / record.id).exists()
        assert finished[0].id == record.id
        assert any("Found 2 files in dist folder" in line for line in record.logs)

    def test_release_build_type(self, tmp_path, archive):
        config = BuildConfig(app_name="A", package_id="com.a.b", build_type=BuildType.RELEASE)
        record, _ = run_build(tmp_path, archive, FakeToolchain(), config=config)
        assert record.status == BuildStatus.COMPLETE

    def test_missing_index_html(self, tmp_path):
        archive = validate_archive(build_zip({"src/main.js": "x"}))
        record, finished = run_build(tmp_path, archive, FakeToolchain())
        assert record.status == BuildStatus.FAILED
        assert "No index.html" in record.error
        assert record.artifact_path is None
        assert not (tmp_path / "workspaces" / record.id).exists()
        assert finished[0].status == BuildStatus.FAILED

    def test_stage_failure_names_stage(self, tmp_path, archive):
        toolchain = FakeToolchain(compile_code="import sys; sys.stderr.write('gradle exploded'); sys.exit(1)")
        record, _ = run_build(tmp_path, archive, toolchain)
        assert record.status == BuildStatus.FAILED
        assert record.error.startswith("[compile]")
        assert "gradle exploded" in record.error
        assert not (tmp_path / "artifacts" / f"{record.id}.apk").exists()
        assert not (tmp_path / "workspaces" / record.id).exists()

    def test_deadline_fails_build(self, tmp_path, archive):
        toolchain = FakeToolchain(compile_code="import time; time.sleep(30)")
        start = time.monotonic()
        record, _ = run_build(tmp_path, archive, toolchain, timeout_s=1.0)
        assert time.monotonic() - start < 20
        assert record.status == BuildStatus.FAILED
        assert "[compile]" in record.error
        assert "timed out" in record.error

    def test_secrets_not_visible_to_stages(self, tmp_path, archive):
        env_file = tmp_path / "env.txt"

        def dump_env(ctx):
            ctx.run([
                sys.executable, "-c",
                f"import os, pathlib; pathlib.Path({str(env_file)!r}).write_text('\\n'.join(sorted(os.environ)))",
            ])

        toolchain = FakeToolchain(extra_stages=[Stage("dump_env", 30, "Dumping environment...", dump_env)])
        with patch.dict(os.environ, {"ADMIN_API_KEY": "s3cret", "DEPLOY_TOKEN": "t", "HARMLESS": "1"}):
            record, _ = run_build(tmp_path, archive, toolchain)

        assert record.status == BuildStatus.COMPLETE
        names = env_file.read_text().split("\n")
        assert "ADMIN_API_KEY" not in names
        assert "DEPLOY_TOKEN" not in names
        assert "HARMLESS" in names
        assert "JAVA_HOME" in names
        assert "ANDROID_SDK_ROOT" in names

    def test_best_effort_stage_failure_is_warning(self, tmp_path, archive):
        def broken(ctx):
            raise RuntimeError("icon decoder unavailable")

        toolchain = FakeToolchain(extra_stages=[Stage("icon", 55, "Resolving app icon...", broken, best_effort=True)])
        record, _ = run_build(tmp_path, archive, toolchain)
        assert record.status == BuildStatus.COMPLETE
        assert any("Warning: icon step skipped" in line for line in record.logs)

    def test_unexpected_error_recorded_without_internals(self, tmp_path, archive):
        def crash(ctx):
            raise KeyError("internal detail")

        toolchain = FakeToolchain(extra_stages=[Stage("configure", 30, "Configuring...", crash)])
        record, _ = run_build(tmp_path, archive, toolchain)
        assert record.status == BuildStatus.FAILED
        assert record.error == "Unexpected error: KeyError"

    def test_progress_is_monotonic(self, tmp_path, archive):
        seen = []

        def watch(ctx):
            seen.append(ctx.build_id)

        toolchain = FakeToolchain(extra_stages=[Stage("watch", 40, "Watching...", watch)])
        record, _ = run_build(tmp_path, archive, toolchain)
        assert seen == [record.id]
        assert record.progress == 100


class TestWorkspaceManager:
    def test_cleanup_all_keeps_listed(self, tmp_path):
        manager = WorkspaceManager(tmp_path)
        manager.create_workspace("old-1")
        manager.create_workspace("old-2")
        manager.create_workspace("live")
        assert manager.cleanup_all(keep=frozenset({"live"})) == 2
        assert (tmp_path / "live").exists()
        assert not (tmp_path / "old-1").exists()
