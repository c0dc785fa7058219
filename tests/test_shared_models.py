"""
Unit tests for shared models module.

Covers the immutable snapshot and delta types, persisted state semantics and
conversion between pydantic and SQLAlchemy models.
"""

from datetime import datetime, timezone, timedelta

import pytest
from pydantic import ValidationError

from shared.models import (
    LineDelta,
    LocChange,
    LocChangeModel,
    ModelConverter,
    PendingChange,
    ReconcileResult,
    ReconcileStatus,
    RepositorySnapshot,
    RepositorySummary,
    ReportTotals,
    TrackedRepositoryModel,
    TrackedRepositoryState,
    as_utc,
)


class TestPendingChange:
    """Test cases for PendingChange."""

    def test_counts_cannot_be_negative(self):
        with pytest.raises(ValidationError):
            PendingChange(path="a.py", added=-1)

    def test_is_immutable(self):
        change = PendingChange(path="a.py", added=3)
        with pytest.raises(ValidationError):
            change.added = 4


class TestRepositorySnapshot:
    """Test cases for RepositorySnapshot."""

    def test_pending_sums(self):
        snapshot = RepositorySnapshot(
            repo_id="app",
            head_commit="abc",
            pending_changes=(
                PendingChange(path="a.py", added=10, removed=2),
                PendingChange(path="b.py", added=5, removed=3),
            ),
        )
        assert snapshot.pending_added == 15
        assert snapshot.pending_removed == 5
        assert snapshot.pending_net == 10

    def test_unborn_head(self):
        snapshot = RepositorySnapshot(repo_id="app")
        assert snapshot.head_commit is None
        assert snapshot.pending_net == 0
        assert snapshot.taken_at.tzinfo is not None


class TestLineDelta:
    def test_net_values_may_be_negative(self):
        delta = LineDelta(committed_added=3, committed_removed=10, pending_added=1, pending_removed=4)
        assert delta.committed_net == -7
        assert delta.pending_net == -3

    def test_net_values_are_serialized(self):
        dumped = LineDelta(committed_added=5).model_dump()
        assert dumped["committed_net"] == 5
        assert dumped["pending_net"] == 0


class TestTrackedRepositoryState:
    """Test cases for TrackedRepositoryState."""

    def test_initial_state(self):
        state = TrackedRepositoryState.initial("app", path="/src/app", author="Jane")
        assert state.last_commit is None
        assert state.committed_loc == 0
        assert state.pending_loc == 0
        assert state.last_updated_at is None

    def test_same_totals_ignores_timestamp(self):
        first = TrackedRepositoryState(
            repo_id="app", committed_loc=5, last_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc)
        )
        second = first.model_copy(update={"last_updated_at": datetime(2024, 6, 1, tzinfo=timezone.utc)})
        assert first.same_totals(second)

    def test_same_totals_detects_changes(self):
        first = TrackedRepositoryState(repo_id="app", committed_loc=5)
        assert not first.same_totals(first.model_copy(update={"pending_loc": 1}))
        assert not first.same_totals(first.model_copy(update={"last_commit": "abc"}))

    def test_negative_totals_allowed(self):
        state = TrackedRepositoryState(repo_id="app", committed_loc=-20, pending_loc=-3)
        assert state.committed_loc == -20


class TestSummaries:
    def test_summary_total(self):
        summary = RepositorySummary(repo_id="app", committed_loc=80, pending_loc=10)
        assert summary.total == 90
        assert summary.model_dump()["total"] == 90

    def test_report_totals(self):
        assert ReportTotals(repositories=2, committed_loc=100, pending_loc=-5).total == 95


class TestReconcileResult:
    def test_ok_only_when_completed(self):
        assert ReconcileResult(repo_id="app", status=ReconcileStatus.COMPLETED).ok
        assert not ReconcileResult(repo_id="app", status=ReconcileStatus.RETRY_LATER).ok
        assert not ReconcileResult(repo_id="app", status=ReconcileStatus.FAILED).ok


class TestAsUtc:
    def test_naive_values_are_treated_as_utc(self):
        value = as_utc(datetime(2024, 1, 1, 12, 0))
        assert value.tzinfo == timezone.utc
        assert value.hour == 12

    def test_aware_values_are_converted(self):
        value = as_utc(datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))))
        assert value.hour == 10

    def test_none(self):
        assert as_utc(None) is None


class TestModelConverter:
    """Test cases for ModelConverter."""

    def test_state_round_trip(self):
        state = TrackedRepositoryState(
            repo_id="app",
            last_commit="abc123",
            committed_loc=80,
            pending_loc=10,
            committed_added=100,
            committed_removed=20,
            pending_added=15,
            pending_removed=5,
            last_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            path="/src/app",
            author="Jane",
        )
        model = TrackedRepositoryModel(**ModelConverter.state_to_row(state))
        assert ModelConverter.model_to_state(model) == state

    def test_change_conversion(self):
        change = LocChange(
            repo_id="app",
            timestamp=datetime(2024, 1, 1, 8, 30),
            head_commit="def456",
            committed_added=100,
            committed_removed=20,
            trigger="filesystem",
            rebaselined=True,
        )
        model = ModelConverter.change_to_model(change)
        assert isinstance(model, LocChangeModel)
        assert model.trigger == "filesystem"

        model.id = 7
        restored = ModelConverter.model_to_change(model)
        assert restored.id == 7
        assert restored.timestamp.tzinfo == timezone.utc
        assert restored.rebaselined is True
