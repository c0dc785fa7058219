"""Read-only summaries over the state store."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from shared.database import LocChangeRepository, StateStore
from shared.models import LocChange, RepositorySummary, ReportTotals, TrackedRepositoryState, utc_now


class Reporter:
    """Always reflects what is persisted at call time; nothing is cached."""

    def __init__(
        self,
        store: StateStore,
        history: Optional[LocChangeRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.history_repo = history or LocChangeRepository(store.db)
        self.clock = clock

    async def summarize(self, stale_after: Optional[timedelta] = None) -> List[RepositorySummary]:
        """One row per repository; failing repositories keep their last persisted values."""
        now = self.clock()
        return [self._summary(state, now, stale_after) for state in await self.store.list()]

    async def totals(self) -> ReportTotals:
        states = await self.store.list()
        return ReportTotals(
            repositories=len(states),
            committed_loc=sum(state.committed_loc for state in states),
            pending_loc=sum(state.pending_loc for state in states),
        )

    async def history(self, repo_id: str, limit: int = 20) -> List[LocChange]:
        return await self.history_repo.recent(repo_id, limit=limit)

    @staticmethod
    def _summary(
        state: TrackedRepositoryState, now: datetime, stale_after: Optional[timedelta]
    ) -> RepositorySummary:
        stale = False
        if stale_after is not None:
            stale = state.last_updated_at is None or now - state.last_updated_at > stale_after
        return RepositorySummary(
            repo_id=state.repo_id,
            committed_loc=state.committed_loc,
            pending_loc=state.pending_loc,
            last_commit=state.last_commit,
            last_updated_at=state.last_updated_at,
            stale=stale,
        )


def format_summary_lines(summaries: List[RepositorySummary]) -> List[str]:
    """Plain-text status lines, one per repository plus a total."""
    lines = [
        f"{summary.repo_id}: {summary.committed_loc} LoC committed, "
        f"{summary.pending_loc} LoC In Progress"
        for summary in summaries
    ]
    committed = sum(summary.committed_loc for summary in summaries)
    pending = sum(summary.pending_loc for summary in summaries)
    lines.append(f"Total: {committed} LoC committed, {pending} LoC In Progress")
    return lines
