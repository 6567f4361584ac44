"""
Tests for the build registry: atomic admission, state machine, ownership.
"""
import threading

import pytest

from app.core.auth import ADMIN, Identity
from app.core.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    OwnershipError,
    QuotaError,
)
from app.core.gatekeeper import BuildConfig
from app.core.registry import BuildRegistry
from app.schemas.build import BuildStatus

ALICE = Identity(pubkey="a" * 64)
BOB = Identity(pubkey="b" * 64)
CONFIG = BuildConfig(app_name="Test App", package_id="com.example.test")


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def noop_factory(build_id):
    return lambda: None


def make_registry(max_concurrent=1, max_queue_depth=10, max_active=3, clock=None):
    spawned = []
    registry = BuildRegistry(
        max_concurrent=max_concurrent,
        max_queue_depth=max_queue_depth,
        max_active_per_identity=max_active,
        spawn=spawned.append,
        clock=clock,
    )
    return registry, spawned


class TestAdmission:
    """Quota checks and record creation are one atomic step."""

    def test_admit_creates_queued_record(self):
        registry, spawned = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        assert record.status == BuildStatus.QUEUED
        assert record.owner == ALICE.pubkey
        assert record.progress == 0
        assert len(registry) == 1
        assert len(spawned) == 1

    def test_per_identity_cap(self):
        registry, _ = make_registry(max_active=3)
        for _ in range(3):
            registry.admit(ALICE, CONFIG, noop_factory)

        with pytest.raises(QuotaError) as exc:
            registry.admit(ALICE, CONFIG, noop_factory)
        assert exc.value.current == 3
        assert exc.value.limit == 3
        assert "3/3" in exc.value.message
        assert len(registry) == 3

        # Other identities are unaffected
        registry.admit(BOB, CONFIG, noop_factory)

    def test_admin_bypasses_identity_cap(self):
        registry, _ = make_registry(max_active=1)
        for _ in range(4):
            registry.admit(ADMIN, CONFIG, noop_factory)
        assert len(registry) == 4

    def test_queue_bound_applies_to_admin(self):
        registry, _ = make_registry(max_concurrent=1, max_queue_depth=2)
        for _ in range(3):
            registry.admit(ADMIN, CONFIG, noop_factory)
        with pytest.raises(QuotaError) as exc:
            registry.admit(ADMIN, CONFIG, noop_factory)
        assert "queue is full" in exc.value.message
        assert len(registry) == 3

    def test_terminal_records_do_not_count(self):
        registry, _ = make_registry(max_active=1)
        record = registry.admit(ALICE, CONFIG, noop_factory)
        registry.begin(record.id)
        registry.fail(record.id, "broken")
        registry.admit(ALICE, CONFIG, noop_factory)

    def test_concurrent_admission_never_exceeds_cap(self):
        registry, _ = make_registry(max_concurrent=2, max_queue_depth=100, max_active=3)
        results = {"ok": 0, "rejected": 0}
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def submit():
            barrier.wait()
            try:
                registry.admit(ALICE, CONFIG, noop_factory)
                outcome = "ok"
            except QuotaError:
                outcome = "rejected"
            with lock:
                results[outcome] += 1

        threads = [threading.Thread(target=submit) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {"ok": 3, "rejected": 17}
        assert registry.active_count(ALICE.key) == 3


class TestStateMachine:
    """queued -> building -> complete | failed; queued -> cancelled."""

    def test_full_success_path(self):
        clock = FakeClock()
        registry, _ = make_registry(clock=clock)
        record = registry.admit(ALICE, CONFIG, noop_factory)

        started = registry.begin(record.id)
        assert started.status == BuildStatus.BUILDING
        assert started.progress == 5

        registry.set_progress(record.id, 60)
        registry.set_progress(record.id, 30)  # never decreases
        assert registry.get(record.id, ALICE).progress == 60

        clock.now += 10
        done = registry.complete(record.id, "/tmp/x.apk", 1234)
        assert done.status == BuildStatus.COMPLETE
        assert done.progress == 100
        assert done.artifact_size == 1234
        assert done.completed_at == clock.now

    def test_failure_clears_artifact(self):
        registry, _ = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        registry.begin(record.id)
        failed = registry.fail(record.id, "[compile] boom")
        assert failed.status == BuildStatus.FAILED
        assert failed.error == "[compile] boom"
        assert failed.artifact_path is None

    def test_illegal_transitions(self):
        registry, _ = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        with pytest.raises(InvalidTransition):
            registry.complete(record.id, "/tmp/x.apk", 1)

        registry.begin(record.id)
        registry.complete(record.id, "/tmp/x.apk", 1)
        with pytest.raises(InvalidTransition):
            registry.fail(record.id, "late")
        with pytest.raises(InvalidTransition):
            registry.begin(record.id)

    def test_logs_are_timestamped_and_closed_when_terminal(self):
        registry, _ = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        registry.begin(record.id)
        registry.append_log(record.id, "Starting build...")
        registry.fail(record.id, "x")
        registry.append_log(record.id, "ignored")

        logs = registry.get(record.id, ALICE).logs
        assert len(logs) == 1
        assert logs[0].endswith("] Starting build...")
        assert logs[0].startswith("[")

    def test_snapshots_are_copies(self):
        registry, _ = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        snapshot = registry.get(record.id, ALICE)
        snapshot.logs.append("tampered")
        assert registry.get(record.id, ALICE).logs == []


class TestCancel:
    """Cancel only while queued."""

    def test_cancel_queued_removes_record(self):
        registry, spawned = make_registry(max_concurrent=1)
        registry.admit(ALICE, CONFIG, noop_factory)
        queued = registry.admit(ALICE, CONFIG, noop_factory)

        cancelled = registry.cancel(queued.id, ALICE)
        assert cancelled.status == BuildStatus.CANCELLED
        assert registry.queue.depth == 0
        with pytest.raises(NotFoundError):
            registry.get(queued.id, ALICE)

        # The cancelled build never reaches building
        while spawned:
            spawned.pop(0)()
        assert len(spawned) == 0

    def test_cancel_dispatched_rejected(self):
        registry, _ = make_registry(max_concurrent=1)
        record = registry.admit(ALICE, CONFIG, noop_factory)
        registry.begin(record.id)
        with pytest.raises(ConflictError) as exc:
            registry.cancel(record.id, ALICE)
        assert exc.value.status == "building"

    def test_cancel_requires_owner(self):
        registry, _ = make_registry(max_concurrent=1)
        registry.admit(ALICE, CONFIG, noop_factory)
        queued = registry.admit(ALICE, CONFIG, noop_factory)
        with pytest.raises(OwnershipError):
            registry.cancel(queued.id, BOB)
        registry.cancel(queued.id, ADMIN)


class TestVisibility:
    """Ownership gating and listing."""

    def test_other_principal_forbidden(self):
        registry, _ = make_registry()
        record = registry.admit(ALICE, CONFIG, noop_factory)
        with pytest.raises(OwnershipError):
            registry.get(record.id, BOB)
        assert registry.get(record.id, ADMIN).id == record.id

    def test_unknown_build(self):
        registry, _ = make_registry()
        with pytest.raises(NotFoundError):
            registry.get("does-not-exist", ALICE)

    def test_list_newest_first_and_scoped(self):
        clock = FakeClock()
        registry, _ = make_registry(max_concurrent=1, max_active=10, clock=clock)
        ids = []
        for _ in range(3):
            ids.append(registry.admit(ALICE, CONFIG, noop_factory).id)
            clock.now += 1
        registry.admit(BOB, CONFIG, noop_factory)

        alice_view = [r.id for r in registry.list_for(ALICE)]
        assert alice_view == list(reversed(ids))
        assert len(registry.list_for(ADMIN)) == 4
        assert len(registry.list_for(BOB)) == 1

    def test_sweep_removes_old_terminal_records(self):
        clock = FakeClock()
        registry, _ = make_registry(max_concurrent=2, clock=clock)
        old = registry.admit(ALICE, CONFIG, noop_factory)
        active = registry.admit(ALICE, CONFIG, noop_factory)
        registry.begin(old.id)
        registry.complete(old.id, "/tmp/x.apk", 1)

        clock.now += 7200
        removed = registry.sweep(clock.now - 3600)
        assert removed == [old.id]
        assert registry.get(active.id, ALICE).status == BuildStatus.QUEUED
