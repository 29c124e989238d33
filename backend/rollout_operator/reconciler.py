"""
Reconciliation loop controller.

``Reconciler.reconcile`` runs one accessor -> planner -> driver -> aggregator
-> persist pass for a single application and returns a requeue hint instead
of blocking. It holds no state between calls beyond per-application locks;
everything needed to resume is in the persisted status and the live objects.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .accessor import Snapshot, StateAccessor
from .backends import JobBackend, StatusStore, WorkloadBackend
from .config import Settings, settings as default_settings
from .errors import ApplicationNotFound, ConflictError, TransientError
from .job_gate import JobGate
from .kube_types import AppKey, ApplicationStatus, ComponentStatus, Phase, utc_now
from .planner import Plan, UpdatePlanner
from .status import StatusAggregator
from .update_driver import UpdateDriver

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    # seconds until the application should be reconciled again, None to wait for a change
    requeue_after: Optional[float] = None
    status: Optional[ApplicationStatus] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Reconciler:
    """Idempotent, re-entrant driver for one application at a time."""

    def __init__(
        self,
        store: StatusStore,
        workloads: WorkloadBackend,
        jobs: JobBackend,
        config: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = utc_now,
        driver: Optional[UpdateDriver] = None,
    ):
        self.config = config or default_settings
        self.store = store
        self.now_fn = now_fn
        self.accessor = StateAccessor(store, workloads)
        self.planner = UpdatePlanner()
        self.driver = driver or UpdateDriver(
            workloads,
            JobGate(jobs),
            retry_base_seconds=self.config.RETRY_BASE_SECS,
            retry_max_seconds=self.config.RETRY_MAX_SECS,
            retry_jitter=self.config.RETRY_JITTER,
            job_deadline_seconds=self.config.JOB_DEADLINE_SECS,
            progress_deadline_seconds=self.config.PROGRESS_DEADLINE_SECS,
        )
        self.aggregator = StatusAggregator()
        self._locks: Dict[AppKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reconcile(self, key: AppKey) -> ReconcileResult:
        """
        Drive one application a step closer to its declared state.

        Returns:
            ReconcileResult with the requeue hint and the status written

        Raises:
            TransientError: a collaborator was unavailable or status writes kept conflicting
        """
        async with self._locks[key]:
            attempts = max(self.config.STATUS_CONFLICT_RETRIES, 1)
            last_conflict = None
            for attempt in range(1, attempts + 1):
                try:
                    return await self._reconcile_once(key)
                except ApplicationNotFound:
                    logger.info(f"Application {key} is gone, nothing to reconcile")
                    self._locks.pop(key, None)
                    return ReconcileResult()
                except ConflictError as e:
                    last_conflict = e
                    logger.warning(f"Status write for {key} conflicted (attempt {attempt}/{attempts}), re-reading")
            raise TransientError(f"status of {key} kept conflicting after {attempts} attempts") from last_conflict

    async def preview(self, key: AppKey) -> Plan:
        """Plan the next pass without touching any collaborator state."""
        snapshot = await self.accessor.load(key)
        if snapshot.spec_error is not None:
            raise snapshot.spec_error
        statuses = self._prepare(snapshot, self.now_fn())
        return self.planner.plan(snapshot.application, statuses, snapshot.observed, self.now_fn())

    async def _reconcile_once(self, key: AppKey) -> ReconcileResult:
        now = self.now_fn()
        snapshot = await self.accessor.load(key)

        if snapshot.spec_error is not None:
            status = self.aggregator.mark_invalid(snapshot.status, snapshot.spec_error, snapshot.generation, now)
            await self._persist(snapshot, status)
            # halted until the spec changes, which triggers a new reconcile
            return ReconcileResult(requeue_after=None, status=status)

        application = snapshot.application
        statuses = self._prepare(snapshot, now)
        plan = self.planner.plan(application, statuses, snapshot.observed, now)
        logger.debug(f"Plan for {key}: {[(s.name, s.action.value) for s in plan.steps]} waiting={plan.waiting}")

        transient = False
        for step in plan.steps:
            try:
                statuses[step.name] = await self.driver.advance(
                    application, step, statuses[step.name], snapshot.observed[step.name], now
                )
            except TransientError as e:
                transient = True
                logger.warning(f"Step {step.action.value} for {key}/{step.name} hit a transient error: {e}")
                statuses[step.name] = statuses[step.name].model_copy(
                    update={"message": f"{step.action.value} will be retried: {e}"}
                )

        for name, reason in plan.waiting.items():
            if statuses[name].phase in (Phase.PENDING, Phase.UPDATING):
                statuses[name] = statuses[name].model_copy(update={"message": reason})

        status = self.aggregator.fold(application, snapshot.status, statuses, now)
        await self._persist(snapshot, status)
        return ReconcileResult(requeue_after=self._requeue_after(status, now, transient), status=status)

    def _prepare(self, snapshot: Snapshot, now: datetime) -> Dict[str, ComponentStatus]:
        return {
            name: self.driver.prepare(
                name,
                spec,
                snapshot.status.component_status.get(name),
                snapshot.observed[name],
                now,
                snapshot.generation,
            )
            for name, spec in snapshot.application.ordered_components()
        }

    async def _persist(self, snapshot: Snapshot, status: ApplicationStatus) -> None:
        if status == snapshot.status:
            logger.debug(f"Status of {snapshot.key} unchanged, skipping write")
            return
        await self.store.update_status(snapshot.key, status, snapshot.token)
        logger.debug(f"Wrote status of {snapshot.key}")

    def _requeue_after(self, status: ApplicationStatus, now: datetime, transient: bool) -> Optional[float]:
        poll = self.config.POLL_INTERVAL_SECS
        if transient:
            return poll

        delays = []
        for component in status.component_status.values():
            if component.phase == Phase.FAILED:
                remaining = (component.next_retry_time - now).total_seconds() if component.next_retry_time else 0
                if remaining > 0:
                    delays.append(max(remaining, self.config.MIN_REQUEUE_SECS))
                else:
                    # backoff elapsed but the retry is still held back
                    delays.append(poll)
            elif component.phase != Phase.CONVERGED:
                delays.append(poll)
        return min(delays) if delays else None
