"""
Line delta computation for one tracked repository.

``DiffComputer.compute`` answers: given the commit already folded into the
durable totals and a fresh snapshot, how many lines did the author add and
remove in commits since then, and what is pending right now? It never
touches the store.
"""

import logging
from typing import Optional, Union

from shared.git_reader import GitRepositoryReader
from shared.models import HistoryRewrite, LineDelta, RepositorySnapshot

logger = logging.getLogger(__name__)


class DiffComputer:
    """Pure function of (previous commit, snapshot) plus read access to history."""

    def __init__(self, repo_id: str, reader: GitRepositoryReader):
        self.repo_id = repo_id
        self.reader = reader

    def compute(
        self, previous_commit: Optional[str], snapshot: RepositorySnapshot
    ) -> Union[LineDelta, HistoryRewrite]:
        """
        Compute the delta between ``previous_commit`` and ``snapshot``.

        Returns a ``HistoryRewrite`` instead of a delta when ``previous_commit``
        is no longer an ancestor of the snapshot's head, so the caller can
        re-baseline rather than fold in a meaningless difference.
        """
        if snapshot.repo_id != self.repo_id:
            raise ValueError(
                f"Snapshot for '{snapshot.repo_id}' given to diff computer for '{self.repo_id}'"
            )

        head = snapshot.head_commit
        pending = {
            "pending_added": snapshot.pending_added,
            "pending_removed": snapshot.pending_removed,
        }

        if head == previous_commit:
            return LineDelta(**pending)

        if head is None:
            # Branch became unborn (e.g. orphan checkout): nothing we counted is reachable
            return HistoryRewrite(previous_commit=previous_commit, head_commit=None)

        if previous_commit is not None and not self.reader.is_ancestor(previous_commit, head):
            return HistoryRewrite(previous_commit=previous_commit, head_commit=head)

        stats = self.reader.committed_changes(previous_commit, head)
        logger.debug(
            "%s: %d author commits in %s..%s (+%d/-%d)",
            self.repo_id,
            stats.commits,
            (previous_commit or "")[:12],
            head[:12],
            stats.added,
            stats.removed,
        )
        return LineDelta(
            committed_added=stats.added,
            committed_removed=stats.removed,
            commit_count=stats.commits,
            **pending,
        )
