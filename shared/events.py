"""
Reconciliation trigger events.

Triggers are pure signals: they carry where they came from and when, never
what changed. The reconciler always re-reads the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any


class TriggerSource(Enum):
    """Why a reconciliation was requested."""

    STARTUP = "startup"
    FILESYSTEM = "filesystem"
    POLL = "poll"
    RETRY = "retry"
    MANUAL = "manual"


@dataclass(frozen=True)
class ReconcileTrigger:
    """A request to reconcile one repository."""

    repo_id: str
    source: TriggerSource = TriggerSource.MANUAL
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo_id": self.repo_id,
            "source": self.source.value,
            "requested_at": self.requested_at.isoformat(),
        }
