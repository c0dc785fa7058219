"""
Per-repository reconciliation workers.

Each repository gets one long-lived task and a single-slot pending trigger.
A trigger that arrives while a reconciliation is running fills the slot; any
further triggers before the slot is consumed are absorbed into it, so a burst
during one reconciliation produces exactly one follow-up run.
"""

import asyncio
import logging
from typing import Callable, Optional

from config.settings import ReconcileSettings
from services.loc_tracker.reconciler import Reconciler
from shared.events import ReconcileTrigger, TriggerSource
from shared.models import ReconcileResult, ReconcileStatus

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Capped exponential backoff for unreadable repositories."""

    def __init__(self, initial: float = 1.0, maximum: float = 300.0, multiplier: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier

    @classmethod
    def from_settings(cls, reconcile_settings: ReconcileSettings) -> "RetryPolicy":
        return cls(
            initial=reconcile_settings.retry_initial_seconds,
            maximum=reconcile_settings.retry_max_seconds,
            multiplier=reconcile_settings.retry_multiplier,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.maximum, self.initial * self.multiplier ** max(attempt - 1, 0))


class RepositoryWorker:
    """Serializes and coalesces reconciliation requests for one repository."""

    def __init__(
        self,
        repo_id: str,
        reconciler: Reconciler,
        retry_policy: Optional[RetryPolicy] = None,
        on_result: Optional[Callable[[ReconcileResult], None]] = None,
    ):
        self.repo_id = repo_id
        self.reconciler = reconciler
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_result = on_result
        self.runs = 0
        self.retry_attempt = 0
        self._pending: Optional[ReconcileTrigger] = None
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._running = False
        self._stopping = False

    @property
    def in_flight(self) -> bool:
        return self._running

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"reconcile:{self.repo_id}")
        return self._task

    def request(self, source: TriggerSource = TriggerSource.MANUAL) -> None:
        """Ask for a reconciliation. Must be called on the event loop thread."""
        if self._stopping:
            return
        if self._pending is None:
            self._pending = ReconcileTrigger(repo_id=self.repo_id, source=source)
        self._wakeup.set()

    async def stop(self) -> None:
        """Drop queued work and wait for an in-flight reconciliation to finish."""
        self._stopping = True
        self._pending = None
        self._cancel_retry()
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._stopping:
                return
            trigger, self._pending = self._pending, None
            if trigger is None:
                continue
            self._running = True
            try:
                result = await self.reconciler.reconcile(self.repo_id, trigger.source)
            except Exception:
                logger.exception(f"{self.repo_id}: unexpected reconciliation failure")
                result = ReconcileResult(
                    repo_id=self.repo_id,
                    status=ReconcileStatus.FAILED,
                    error="unexpected reconciliation failure",
                )
            finally:
                self._running = False
                self.runs += 1
            self._handle_result(result)

    def _handle_result(self, result: ReconcileResult) -> None:
        if result.status is ReconcileStatus.RETRY_LATER:
            self.retry_attempt += 1
            delay = self.retry_policy.delay(self.retry_attempt)
            logger.info(f"{self.repo_id}: retry {self.retry_attempt} in {delay:.1f}s")
            self._schedule_retry(delay)
        elif result.status is ReconcileStatus.COMPLETED:
            self.retry_attempt = 0
            self._cancel_retry()
        # FAILED waits for the next ordinary trigger
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception(f"{self.repo_id}: result callback failed")

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        if self._stopping:
            return
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self.request, TriggerSource.RETRY)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
