"""
Unit Tests: JobRegistry and ResultStore
═════════════════════════════════════════
Tests for:
  • JobRegistry.update: upsert, percent clamping, terminal rejection
  • JobRegistry eviction: grace period via injected clock, explicit evict(),
                          retired ids and finished()
  • ResultStore: read-once pop, TTL expiry
  • Job identifiers: format and pipeline routing

No I/O, no event loop required.
"""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from app.jobs.ids import new_job_id, pipeline_of
from app.jobs.registry import JobRegistry
from app.jobs.results import ResultStore
from app.schemas.jobs import Pipeline, Stage


@pytest.fixture
def registry(clock) -> JobRegistry:
    return JobRegistry(grace_seconds=30.0, clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# update / get
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRegistryUpdate:

    def test_first_update_creates_snapshot(self, registry):
        snap = registry.update("job-1", Stage.UPLOADING, 10, "Uploading...")

        assert snap is not None
        assert registry.get("job-1") == snap
        assert snap.stage   == Stage.UPLOADING
        assert snap.percent == 10
        assert not snap.is_terminal

    def test_unknown_job_returns_none(self, registry):
        assert registry.get("nope") is None
        assert "nope" not in registry

    def test_lower_percent_is_clamped_up(self, registry):
        registry.update("job-1", Stage.PROCESSING, 60, "step")
        snap = registry.update("job-1", Stage.PROCESSING, 40, "late tick")

        assert snap.percent == 60
        assert snap.message == "late tick"

    def test_percent_is_bounded_to_0_100(self, registry):
        assert registry.update("a", Stage.PROCESSING, 140, "").percent == 100
        assert registry.update("b", Stage.PROCESSING, -5, "").percent == 0

    def test_error_update_is_not_clamped(self, registry):
        registry.update("job-1", Stage.PROCESSING, 60, "step")
        snap = registry.update("job-1", Stage.ERROR, 100, "Processing failed", error="boom")

        assert snap.stage == Stage.ERROR
        assert snap.error == "boom"
        assert snap.is_terminal

    def test_update_after_completed_is_rejected(self, registry):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)

        assert registry.update("job-1", Stage.PROCESSING, 50, "stray") is None
        assert registry.get("job-1").stage == Stage.COMPLETED

    def test_update_after_error_is_rejected(self, registry):
        registry.update("job-1", Stage.ERROR, 100, "Processing failed", error="x")

        assert registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True) is None
        assert registry.get("job-1").stage == Stage.ERROR

    def test_snapshots_are_immutable(self, registry):
        snap = registry.update("job-1", Stage.UPLOADING, 10, "Uploading...")
        with pytest.raises(ValidationError):
            snap.percent = 99


# ─────────────────────────────────────────────────────────────────────────────
# Eviction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRegistryEviction:

    def test_terminal_snapshot_survives_grace_period(self, registry, clock):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)
        clock.advance(29.9)

        assert registry.get("job-1") is not None

    def test_terminal_snapshot_evicted_after_grace_period(self, registry, clock):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)
        clock.advance(30.0)

        assert registry.get("job-1") is None
        assert len(registry) == 0

    def test_running_jobs_are_never_evicted(self, registry, clock):
        registry.update("job-1", Stage.PROCESSING, 40, "working")
        clock.advance(3600)

        assert registry.get("job-1") is not None

    def test_evict_removes_immediately(self, registry):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)
        registry.evict("job-1")

        assert registry.get("job-1") is None

    def test_evict_unknown_job_is_noop(self, registry):
        registry.evict("never-existed")

    def test_retired_id_rejects_updates(self, registry, clock):
        registry.update("job-1", Stage.ERROR, 100, "failed", error="x")
        clock.advance(31)

        assert registry.update("job-1", Stage.UPLOADING, 10, "again") is None
        assert registry.get("job-1") is None


@pytest.mark.unit
class TestRegistryFinished:

    def test_unknown_job_is_not_finished(self, registry):
        assert registry.finished("never-existed") is False

    def test_running_job_is_not_finished(self, registry):
        registry.update("job-1", Stage.PROCESSING, 40, "working")
        assert registry.finished("job-1") is False

    def test_terminal_job_is_finished(self, registry):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)
        assert registry.finished("job-1") is True

    def test_finished_survives_explicit_evict(self, registry):
        registry.update("job-1", Stage.COMPLETED, 100, "done", completed=True)
        registry.evict("job-1")

        assert registry.get("job-1") is None
        assert registry.finished("job-1") is True

    def test_finished_survives_grace_expiry(self, registry, clock):
        registry.update("job-1", Stage.ERROR, 100, "Processing cancelled", error="x")
        clock.advance(30.0)

        assert registry.get("job-1") is None
        assert registry.finished("job-1") is True

    def test_evict_unknown_job_retires_nothing(self, registry):
        registry.evict("never-existed")
        assert registry.finished("never-existed") is False

    def test_retired_ids_are_bounded(self, clock):
        registry = JobRegistry(grace_seconds=30.0, clock=clock, retired_limit=2)
        for job_id in ("job-1", "job-2", "job-3"):
            registry.update(job_id, Stage.COMPLETED, 100, "done", completed=True)
            registry.evict(job_id)

        assert registry.finished("job-1") is False
        assert registry.finished("job-2") is True
        assert registry.finished("job-3") is True


# ─────────────────────────────────────────────────────────────────────────────
# ResultStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestResultStore:

    def test_pop_returns_payload_once(self, clock):
        store = ResultStore(ttl_seconds=600, clock=clock)
        store.put("job-1", {"invoice_number": "INV-1"})

        assert store.pop("job-1") == {"invoice_number": "INV-1"}
        assert store.pop("job-1") is None

    def test_unclaimed_result_expires(self, clock):
        store = ResultStore(ttl_seconds=600, clock=clock)
        store.put("job-1", {"invoice_number": "INV-1"})
        clock.advance(600)

        assert "job-1" not in store
        assert store.pop("job-1") is None

    def test_put_overwrites_and_refreshes_ttl(self, clock):
        store = ResultStore(ttl_seconds=10, clock=clock)
        store.put("job-1", {"v": 1})
        clock.advance(8)
        store.put("job-1", {"v": 2})
        clock.advance(8)

        assert store.pop("job-1") == {"v": 2}


# ─────────────────────────────────────────────────────────────────────────────
# Job identifiers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestJobIds:

    def test_format(self):
        job_id = new_job_id(Pipeline.OPENAI)
        assert re.fullmatch(r"openai_\d{13}_[0-9a-z]{9}", job_id)

    def test_ids_are_unique(self):
        ids = {new_job_id(Pipeline.PRIVACY) for _ in range(500)}
        assert len(ids) == 500

    @pytest.mark.parametrize(
        "job_id, expected",
        [
            ("openai_1718000000000_abc123xyz",  Pipeline.OPENAI),
            ("privacy_1718000000000_abc123xyz", Pipeline.PRIVACY),
            ("other_1718000000000_abc123xyz",   None),
            ("garbage",                         None),
        ],
    )
    def test_pipeline_of(self, job_id, expected):
        assert pipeline_of(job_id) == expected
