"""
LoC Tracker Service.

Wires configuration, store, reconciler, per-repository workers and watchers
together and owns their lifecycle:
- startup validation (a bad repository disables only itself)
- one startup reconciliation per repository
- debounced filesystem triggers, or polling when watches are unavailable
- orderly shutdown: watchers stop, queued triggers are dropped, in-flight
  reconciliations finish, connections close
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.observers import Observer

from config.settings import Settings, get_database_url, settings, store_files
from services.loc_tracker.reconciler import Reconciler
from services.loc_tracker.reporter import Reporter
from services.loc_tracker.scheduler import RepositoryWorker, RetryPolicy
from services.loc_tracker.watcher import RepositoryWatcher
from shared.database import DatabaseManager, StateStore, init_database
from shared.events import TriggerSource
from shared.exceptions import ConfigurationError
from shared.git_reader import GitRepositoryReader
from shared.models import ReconcileResult

logger = logging.getLogger(__name__)


class LocTrackerService:
    """Core tracking service with lifecycle management."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        db: Optional[DatabaseManager] = None,
        observer_factory: Callable[[], object] = Observer,
        on_result: Optional[Callable[[ReconcileResult], None]] = None,
    ):
        self.settings = config or settings
        self.db = db or DatabaseManager(
            get_database_url(self.settings), echo=self.settings.database.echo
        )
        self.store = StateStore(self.db)
        self.reconciler = Reconciler(self.store, self.settings.reconcile)
        self.reporter = Reporter(self.store)
        self.observer_factory = observer_factory
        self.on_result = on_result
        self.workers: Dict[str, RepositoryWorker] = {}
        self.watchers: Dict[str, RepositoryWatcher] = {}
        self.watch_paths: Dict[str, List[Path]] = {}
        self.configuration_errors: Dict[str, str] = {}
        self._initialized = False

    async def initialize(self, create_schema: bool = True):
        """Open the store (creating tables unless read-only) and validate every configured repository."""
        if self._initialized:
            return
        if create_schema:
            await asyncio.to_thread(init_database, self.db)
        else:
            self.db.initialize()

        for repo in self.settings.repositories:
            reader = GitRepositoryReader(
                repo.path,
                repo.author,
                include_untracked=self.settings.reconcile.include_untracked,
                include_merges=self.settings.reconcile.include_merges,
            )
            try:
                paths = await asyncio.to_thread(reader.validate, repo.repo_id)
            except ConfigurationError as e:
                logger.error(f"Not tracking {repo.repo_id}: {e.reason}")
                self.configuration_errors[repo.repo_id] = e.reason
                continue
            self.reconciler.register(repo, reader)
            self.watch_paths[repo.repo_id] = paths

        if not self.reconciler.repo_ids:
            logger.warning("No valid repositories to track")
        self._initialized = True
        logger.info(f"Tracking {len(self.reconciler.repo_ids)} repositories")

    async def reconcile_all(
        self, source: TriggerSource = TriggerSource.MANUAL
    ) -> List[ReconcileResult]:
        """Reconcile every tracked repository once, in parallel."""
        await self.initialize()
        return list(
            await asyncio.gather(
                *(self.reconciler.reconcile(repo_id, source) for repo_id in self.reconciler.repo_ids)
            )
        )

    async def start(self):
        """Start one worker and one watcher per repository and request a first reconciliation."""
        await self.initialize()
        retry_policy = RetryPolicy.from_settings(self.settings.reconcile)
        for repo_id in self.reconciler.repo_ids:
            worker = RepositoryWorker(
                repo_id, self.reconciler, retry_policy=retry_policy, on_result=self.on_result
            )
            worker.start()
            self.workers[repo_id] = worker

            watcher = RepositoryWatcher(
                repo_id,
                self.watch_paths[repo_id],
                worker.request,
                watcher_settings=self.settings.watcher,
                observer_factory=self.observer_factory,
                ignored_paths=store_files(self.db.url),
            )
            watcher.start()
            self.watchers[repo_id] = watcher

            worker.request(TriggerSource.STARTUP)

    async def run(self, stop_event: asyncio.Event):
        """Track until ``stop_event`` is set, then shut down."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Stop watchers, drop queued work, let in-flight reconciliations finish, close the store."""
        await asyncio.gather(*(watcher.stop() for watcher in self.watchers.values()))
        await asyncio.gather(*(worker.stop() for worker in self.workers.values()))
        self.watchers.clear()
        self.workers.clear()
        await self.db.close()
        logger.info("LoC tracker stopped")
