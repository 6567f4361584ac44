"""
Pytest configuration and fixtures.
"""
import io
import os
import sys
import tempfile
import zipfile

# Set test environment before importing app
os.environ["BUILD_DATA_DIR"] = tempfile.mkdtemp(prefix="build-service-test-")
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["MAX_ACTIVE_BUILDS_PER_USER"] = "3"
os.environ["BUILD_TIMEOUT_MS"] = "60000"

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from app.core.build_service import get_build_service
from app.core.config import get_service_config
from app.core.pipeline import Stage, StageContext
from app.core.toolchain import CapacitorToolchain
from app.db.database import create_session_factory

FAKE_APK = b"PK\x03\x04" + b"fake-apk-payload" * 256


class FakeToolchain(CapacitorToolchain):
    """
    Stands in for Capacitor/Gradle. Each stage runs a short Python subprocess,
    so the executor, the shared deadline and env filtering are exercised for real.
    """

    def __init__(self, compile_code=None, extra_stages=None):
        super().__init__(get_service_config())
        self.compile_code = compile_code
        self.extra_stages = extra_stages or []

    def stages(self, config):
        return [
            Stage("init", 15, "Initializing project...", self._fake_init),
            *self.extra_stages,
            Stage("compile", 60, "Building APK...", self._fake_compile),
        ]

    def _fake_init(self, ctx: StageContext) -> None:
        ctx.run([sys.executable, "-c", "print('init ok')"])

    def _fake_compile(self, ctx: StageContext) -> None:
        if self.compile_code is not None:
            ctx.run([sys.executable, "-c", self.compile_code])
            return
        out_dir = ctx.workdir / "android" / "app" / "build" / "outputs" / "apk" / ctx.config.build_type.value
        code = (
            "import pathlib, sys; "
            f"p = pathlib.Path({str(out_dir)!r}); "
            "p.mkdir(parents=True, exist_ok=True); "
            f"(p / 'app.apk').write_bytes({FAKE_APK!r})"
        )
        ctx.run([sys.executable, "-c", code])


def build_zip(files: dict) -> bytes:
    """Create an in-memory ZIP from {name: bytes|str}."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


@pytest.fixture
def project_zip() -> bytes:
    """A minimal valid web project."""
    return build_zip({
        "dist/index.html": "<html><head><title>Test</title></head><body>hi</body></html>",
        "dist/app.js": "console.log('hi');",
    })


@pytest.fixture
def session_factory(tmp_path):
    """Isolated SQLite database."""
    return create_session_factory(tmp_path / "test.db")


@pytest.fixture
def service():
    """The process-wide build service, wired to the fake toolchain."""
    svc = get_build_service()
    svc.executor.toolchain = FakeToolchain()
    yield svc
    svc.registry.queue.drain(timeout=30)


@pytest.fixture
def client(service):
    """Create a test client."""
    yield TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_headers():
    """Return admin authentication headers."""
    return {"X-API-Key": "test-admin-key"}
