"""
Data models for the LoC tracker.

This module provides:
- Immutable repository snapshots and line deltas (pydantic)
- The persisted per-repository state and its summary view
- Reconciliation results
- SQLAlchemy tables for durable state and reconciliation history
- Conversion between pydantic and SQLAlchemy models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PendingChange(BaseModel):
    """Uncommitted modification of one file."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="Path relative to the working tree root")
    added: int = Field(default=0, ge=0, description="Lines added")
    removed: int = Field(default=0, ge=0, description="Lines removed")


class RepositorySnapshot(BaseModel):
    """Observable state of a repository at one instant."""

    model_config = ConfigDict(frozen=True)

    repo_id: str = Field(..., min_length=1)
    head_commit: Optional[str] = Field(default=None, description="None until the first commit")
    pending_changes: Tuple[PendingChange, ...] = Field(default_factory=tuple)
    taken_at: datetime = Field(default_factory=utc_now)

    @property
    def pending_added(self) -> int:
        return sum(change.added for change in self.pending_changes)

    @property
    def pending_removed(self) -> int:
        return sum(change.removed for change in self.pending_changes)

    @property
    def pending_net(self) -> int:
        return self.pending_added - self.pending_removed


class LineDelta(BaseModel):
    """Lines attributable to the author since the previous baseline."""

    model_config = ConfigDict(frozen=True)

    committed_added: int = Field(default=0, ge=0)
    committed_removed: int = Field(default=0, ge=0)
    pending_added: int = Field(default=0, ge=0)
    pending_removed: int = Field(default=0, ge=0)
    commit_count: int = Field(default=0, ge=0, description="Author commits folded in")

    @computed_field
    @property
    def committed_net(self) -> int:
        return self.committed_added - self.committed_removed

    @computed_field
    @property
    def pending_net(self) -> int:
        return self.pending_added - self.pending_removed


class HistoryRewrite(BaseModel):
    """The stored baseline commit is no longer reachable from the new head."""

    model_config = ConfigDict(frozen=True)

    previous_commit: str
    head_commit: Optional[str] = None


class TrackedRepositoryState(BaseModel):
    """Durable running totals for one repository."""

    model_config = ConfigDict(frozen=True)

    repo_id: str = Field(..., min_length=1)
    last_commit: Optional[str] = None
    committed_loc: int = 0
    pending_loc: int = 0
    committed_added: int = Field(default=0, ge=0)
    committed_removed: int = Field(default=0, ge=0)
    pending_added: int = Field(default=0, ge=0)
    pending_removed: int = Field(default=0, ge=0)
    last_updated_at: Optional[datetime] = None
    path: Optional[str] = None
    author: Optional[str] = None

    @classmethod
    def initial(cls, repo_id: str, path: Optional[str] = None, author: Optional[str] = None):
        """State of a repository that has never been reconciled."""
        return cls(repo_id=repo_id, path=path, author=author)

    def same_totals(self, other: "TrackedRepositoryState") -> bool:
        """Compare everything except the update timestamp."""
        return self.model_dump(exclude={"last_updated_at"}) == other.model_dump(
            exclude={"last_updated_at"}
        )


class RepositorySummary(BaseModel):
    """One row of the reporter's summary view."""

    repo_id: str
    committed_loc: int
    pending_loc: int
    last_commit: Optional[str] = None
    last_updated_at: Optional[datetime] = None
    stale: bool = False

    @computed_field
    @property
    def total(self) -> int:
        return self.committed_loc + self.pending_loc


class ReportTotals(BaseModel):
    """Sums across all tracked repositories."""

    repositories: int = 0
    committed_loc: int = 0
    pending_loc: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.committed_loc + self.pending_loc


class LocChange(BaseModel):
    """One entry of the reconciliation history."""

    repo_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    author: Optional[str] = None
    previous_commit: Optional[str] = None
    head_commit: Optional[str] = None
    committed_added: int = 0
    committed_removed: int = 0
    pending_added: int = 0
    pending_removed: int = 0
    trigger: str = "manual"
    rebaselined: bool = False
    id: Optional[int] = None


class ReconcileStatus(Enum):
    """Outcome of one reconciliation attempt."""

    COMPLETED = "completed"
    RETRY_LATER = "retry_later"
    FAILED = "failed"


class ReconcileResult(BaseModel):
    """What the reconciler hands back to its caller. Never an exception."""

    repo_id: str
    status: ReconcileStatus
    state: Optional[TrackedRepositoryState] = None
    error: Optional[str] = None
    changed: bool = False
    rebaselined: bool = False

    @property
    def ok(self) -> bool:
        return self.status is ReconcileStatus.COMPLETED


# SQLAlchemy Models for Database
class TrackedRepositoryModel(Base):
    """SQLAlchemy model for per-repository totals."""

    __tablename__ = "tracked_repositories"

    repo_id = Column(String(255), primary_key=True)
    path = Column(String(1024), nullable=True)
    author = Column(String(255), nullable=True)
    last_commit = Column(String(64), nullable=True)
    committed_loc = Column(Integer, nullable=False, default=0)
    pending_loc = Column(Integer, nullable=False, default=0)
    committed_added = Column(Integer, nullable=False, default=0)
    committed_removed = Column(Integer, nullable=False, default=0)
    pending_added = Column(Integer, nullable=False, default=0)
    pending_removed = Column(Integer, nullable=False, default=0)
    last_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class LocChangeModel(Base):
    """SQLAlchemy model for reconciliation history."""

    __tablename__ = "loc_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(String(255), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    author = Column(String(255), nullable=True)
    previous_commit = Column(String(64), nullable=True)
    head_commit = Column(String(64), nullable=True)
    committed_added = Column(Integer, nullable=False, default=0)
    committed_removed = Column(Integer, nullable=False, default=0)
    pending_added = Column(Integer, nullable=False, default=0)
    pending_removed = Column(Integer, nullable=False, default=0)
    trigger = Column(String(20), nullable=False, default="manual")
    rebaselined = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_loc_changes_repo_timestamp", "repo_id", "timestamp"),)


# Model conversion utilities
class ModelConverter:
    """Utility class for converting between Pydantic and SQLAlchemy models."""

    @staticmethod
    def state_to_row(state: TrackedRepositoryState) -> dict:
        """Column values for an upsert of a state row."""
        return {
            "repo_id": state.repo_id,
            "path": state.path,
            "author": state.author,
            "last_commit": state.last_commit,
            "committed_loc": state.committed_loc,
            "pending_loc": state.pending_loc,
            "committed_added": state.committed_added,
            "committed_removed": state.committed_removed,
            "pending_added": state.pending_added,
            "pending_removed": state.pending_removed,
            "last_updated_at": state.last_updated_at,
        }

    @staticmethod
    def model_to_state(model: TrackedRepositoryModel) -> TrackedRepositoryState:
        """Convert SQLAlchemy TrackedRepositoryModel to Pydantic TrackedRepositoryState."""
        return TrackedRepositoryState(
            repo_id=model.repo_id,
            path=model.path,
            author=model.author,
            last_commit=model.last_commit,
            committed_loc=model.committed_loc,
            pending_loc=model.pending_loc,
            committed_added=model.committed_added,
            committed_removed=model.committed_removed,
            pending_added=model.pending_added,
            pending_removed=model.pending_removed,
            last_updated_at=as_utc(model.last_updated_at),
        )

    @staticmethod
    def change_to_model(change: LocChange) -> LocChangeModel:
        """Convert Pydantic LocChange to SQLAlchemy LocChangeModel."""
        return LocChangeModel(
            repo_id=change.repo_id,
            timestamp=change.timestamp,
            author=change.author,
            previous_commit=change.previous_commit,
            head_commit=change.head_commit,
            committed_added=change.committed_added,
            committed_removed=change.committed_removed,
            pending_added=change.pending_added,
            pending_removed=change.pending_removed,
            trigger=change.trigger,
            rebaselined=change.rebaselined,
        )

    @staticmethod
    def model_to_change(model: LocChangeModel) -> LocChange:
        """Convert SQLAlchemy LocChangeModel to Pydantic LocChange."""
        return LocChange(
            id=model.id,
            repo_id=model.repo_id,
            timestamp=as_utc(model.timestamp),
            author=model.author,
            previous_commit=model.previous_commit,
            head_commit=model.head_commit,
            committed_added=model.committed_added,
            committed_removed=model.committed_removed,
            pending_added=model.pending_added,
            pending_removed=model.pending_removed,
            trigger=model.trigger,
            rebaselined=model.rebaselined,
        )


# Export commonly used classes and functions
__all__ = [
    "Base", "utc_now", "as_utc",
    "PendingChange", "RepositorySnapshot", "LineDelta", "HistoryRewrite",
    "TrackedRepositoryState", "RepositorySummary", "ReportTotals", "LocChange",
    "ReconcileStatus", "ReconcileResult",
    "TrackedRepositoryModel", "LocChangeModel",
    "ModelConverter",
]
