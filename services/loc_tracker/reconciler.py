"""
Reconciliation of repository snapshots into durable totals.

One reconciliation: take a snapshot, load the persisted state, ask the diff
computer for the delta since ``last_commit``, fold it in and save the new
row in one transaction. Re-running on an unchanged repository reproduces the
same totals because pending lines are replaced, never accumulated, and the
committed range collapses to nothing once ``last_commit`` equals HEAD.

Reconciliations for the same repository are serialized by a per-repository
lock. Errors never escape: callers get a ``ReconcileResult``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from config.settings import RepositoryConfig, ReconcileSettings
from services.loc_tracker.diff_computer import DiffComputer
from shared.database import StateStore
from shared.events import TriggerSource
from shared.exceptions import RepoUnavailable, StoreFailure
from shared.git_reader import GitRepositoryReader
from shared.models import (
    HistoryRewrite,
    LineDelta,
    LocChange,
    ReconcileResult,
    ReconcileStatus,
    RepositorySnapshot,
    TrackedRepositoryState,
    utc_now,
)

logger = logging.getLogger(__name__)


def fold_delta(
    state: TrackedRepositoryState,
    snapshot: RepositorySnapshot,
    delta: LineDelta,
    now: datetime,
) -> TrackedRepositoryState:
    """Add the committed delta to the running totals and replace the pending figures."""
    return state.model_copy(
        update={
            "last_commit": snapshot.head_commit,
            "committed_added": state.committed_added + delta.committed_added,
            "committed_removed": state.committed_removed + delta.committed_removed,
            "committed_loc": state.committed_loc + delta.committed_net,
            "pending_added": delta.pending_added,
            "pending_removed": delta.pending_removed,
            "pending_loc": delta.pending_net,
            "last_updated_at": now,
        }
    )


def rebaseline(
    state: TrackedRepositoryState,
    snapshot: RepositorySnapshot,
    recount: LineDelta,
    now: datetime,
) -> TrackedRepositoryState:
    """Replace the committed totals with a full recount up to the new head."""
    return state.model_copy(
        update={
            "last_commit": snapshot.head_commit,
            "committed_added": recount.committed_added,
            "committed_removed": recount.committed_removed,
            "committed_loc": recount.committed_net,
            "pending_added": recount.pending_added,
            "pending_removed": recount.pending_removed,
            "pending_loc": recount.pending_net,
            "last_updated_at": now,
        }
    )


@dataclass
class TrackedRepository:
    """Everything the reconciler needs for one repository."""

    config: RepositoryConfig
    reader: GitRepositoryReader
    diff_computer: DiffComputer

    @property
    def repo_id(self) -> str:
        return self.config.repo_id


class Reconciler:
    """Folds snapshots into the store, at most one in flight per repository."""

    def __init__(
        self,
        store: StateStore,
        reconcile_settings: Optional[ReconcileSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = reconcile_settings or ReconcileSettings()
        self.clock = clock
        self._repositories: Dict[str, TrackedRepository] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(
        self, config: RepositoryConfig, reader: Optional[GitRepositoryReader] = None
    ) -> TrackedRepository:
        """Start tracking a repository."""
        if config.repo_id in self._repositories:
            raise ValueError(f"Repository already registered: {config.repo_id}")
        reader = reader or GitRepositoryReader(
            config.path,
            config.author,
            include_untracked=self.settings.include_untracked,
            include_merges=self.settings.include_merges,
        )
        tracked = TrackedRepository(
            config=config, reader=reader, diff_computer=DiffComputer(config.repo_id, reader)
        )
        self._repositories[config.repo_id] = tracked
        self._locks[config.repo_id] = asyncio.Lock()
        return tracked

    @property
    def repo_ids(self) -> List[str]:
        return list(self._repositories)

    def __contains__(self, repo_id: str) -> bool:
        return repo_id in self._repositories

    def is_busy(self, repo_id: str) -> bool:
        return self._locks[repo_id].locked()

    async def reconcile(
        self, repo_id: str, source: TriggerSource = TriggerSource.MANUAL
    ) -> ReconcileResult:
        """Reconcile one repository. Raises KeyError only for an unregistered repo_id."""
        tracked = self._repositories[repo_id]
        async with self._locks[repo_id]:
            try:
                return await self._reconcile_locked(tracked, source)
            except RepoUnavailable as e:
                logger.warning(f"{repo_id}: repository unavailable, will retry: {e.reason}")
                return ReconcileResult(
                    repo_id=repo_id, status=ReconcileStatus.RETRY_LATER, error=str(e)
                )
            except StoreFailure as e:
                logger.error(f"{repo_id}: store write failed, totals not advanced: {e}")
                return ReconcileResult(repo_id=repo_id, status=ReconcileStatus.FAILED, error=str(e))
            except Exception as e:
                logger.exception(f"{repo_id}: unexpected reconciliation failure")
                return ReconcileResult(
                    repo_id=repo_id,
                    status=ReconcileStatus.FAILED,
                    error=f"unexpected failure: {e}",
                )

    async def _reconcile_locked(
        self, tracked: TrackedRepository, source: TriggerSource
    ) -> ReconcileResult:
        repo_id = tracked.repo_id
        snapshot = await asyncio.to_thread(tracked.reader.take_snapshot, repo_id)

        stored = await self.store.load(repo_id)
        current = stored or TrackedRepositoryState.initial(
            repo_id, path=str(tracked.config.path), author=tracked.config.author
        )

        outcome = await asyncio.to_thread(
            tracked.diff_computer.compute, current.last_commit, snapshot
        )
        now = self.clock()
        rebaselined = isinstance(outcome, HistoryRewrite)
        if rebaselined:
            logger.warning(
                f"{repo_id}: history rewritten ({(outcome.previous_commit or '')[:12]} is not an "
                f"ancestor of {(outcome.head_commit or 'empty')[:12]}), recounting from the start"
            )
            recount = await asyncio.to_thread(tracked.diff_computer.compute, None, snapshot)
            next_state = rebaseline(current, snapshot, recount, now)
            delta = recount
        else:
            delta = outcome
            next_state = fold_delta(current, snapshot, delta, now)

        changed = stored is None or rebaselined or not next_state.same_totals(current)
        change = None
        if changed:
            change = LocChange(
                repo_id=repo_id,
                timestamp=now,
                author=tracked.config.author,
                previous_commit=current.last_commit,
                head_commit=snapshot.head_commit,
                committed_added=delta.committed_added,
                committed_removed=delta.committed_removed,
                pending_added=delta.pending_added,
                pending_removed=delta.pending_removed,
                trigger=source.value,
                rebaselined=rebaselined,
            )

        await self.store.save(next_state, change)

        if changed:
            logger.info(
                f"{repo_id}: {next_state.committed_loc} LoC committed, "
                f"{next_state.pending_loc} LoC in progress ({source.value})"
            )
        return ReconcileResult(
            repo_id=repo_id,
            status=ReconcileStatus.COMPLETED,
            state=next_state,
            changed=changed,
            rebaselined=rebaselined,
        )
