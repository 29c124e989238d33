"""
Component update driver.

Per-component state machine::

    Pending -> PreJob -> Updating -> PostJob -> Converged
                  \\          |           /
                   +------> Failed <----+

Every call advances one component by at most one micro-step and returns the
new ComponentStatus; nothing is written here. Failed components carry their
attempt count, retry time and resume phase in status so any engine instance
can pick them up after the backoff elapses.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from .backends import WorkloadBackend, WorkloadRequest
from .errors import JobFailed
from .job_gate import GatePhase, GateState, JobGate, job_name_for
from .kube_types import Application, ComponentObserved, ComponentSpec, ComponentStatus, Phase
from .planner import Action, PlannedStep, changes_version, target_replicas

logger = logging.getLogger(__name__)


class UpdateDriver:
    """Advances component state machines against the workload and job backends."""

    def __init__(
        self,
        workloads: WorkloadBackend,
        gate: JobGate,
        retry_base_seconds: float = 10.0,
        retry_max_seconds: float = 300.0,
        retry_jitter: float = 0.2,
        job_deadline_seconds: float = 1800.0,
        progress_deadline_seconds: float = 600.0,
        rng: Optional[random.Random] = None,
    ):
        self.workloads = workloads
        self.gate = gate
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.retry_jitter = retry_jitter
        self.job_deadline_seconds = job_deadline_seconds
        self.progress_deadline_seconds = progress_deadline_seconds
        self.rng = rng or random.Random()

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------
    def prepare(
        self,
        name: str,
        spec: ComponentSpec,
        status: Optional[ComponentStatus],
        observed: ComponentObserved,
        now: datetime,
        generation: int = 0,
    ) -> ComponentStatus:
        """
        Fold the latest observation into a component's status before planning.

        Creates the status the first time a component is seen, marks it Unknown
        while its workload cannot be read (remembering where to resume), and
        restarts it at Pending when the desired version changed. Each version
        change opens a new rollout, numbered from the application generation,
        so gate jobs from an earlier rollout of the same version are never reused.
        """
        if status is None:
            current = observed.current_version if self._landed(observed) else ""
            status = ComponentStatus(
                current_version=current,
                desired_version=spec.version,
                phase=Phase.PENDING,
                message=f"version {spec.version} requested",
                last_transition_time=now,
                rollout=generation,
            )

        if observed.error is not None:
            if status.phase in (Phase.UNKNOWN, Phase.FAILED):
                return status
            logger.warning(f"Component {name} is Unknown: {observed.error}")
            return status.model_copy(update={
                "phase": Phase.UNKNOWN,
                "resume_phase": status.phase,
                "last_transition_time": now,
                "message": f"workload state unknown: {observed.error}",
            })

        updates = {
            "ready_replicas": observed.ready_replicas,
            "updated_replicas": observed.updated_replicas,
        }
        if status.phase == Phase.UNKNOWN:
            updates.update({
                "phase": status.resume_phase or Phase.PENDING,
                "resume_phase": None,
                "last_transition_time": now,
                "message": "workload state recovered",
            })
        status = status.model_copy(update=updates)

        if status.desired_version != spec.version:
            logger.info(f"Component {name} now wants version {spec.version} (was {status.desired_version or 'none'})")
            status = self._transition(
                status,
                Phase.PENDING,
                now,
                desired_version=spec.version,
                attempts=0,
                rollout=max(generation, status.rollout + 1),
                next_retry_time=None,
                resume_phase=None,
                job_name=None,
                scaled_down=False,
                phase_start_time=None,
                message=f"version {spec.version} requested",
            )
        return status

    # -------------------------------------------------------------------------
    # Advancing
    # -------------------------------------------------------------------------
    async def advance(
        self,
        application: Application,
        step: PlannedStep,
        status: ComponentStatus,
        observed: ComponentObserved,
        now: datetime,
    ) -> ComponentStatus:
        """
        Perform one planner-authorized micro-step.

        Raises:
            TransientError: a backend call failed; the caller keeps the old status
        """
        action = step.action
        if action == Action.START_PRE_JOB:
            return await self._start_gate(application, step, status, observed, GatePhase.PRE, now)
        if action == Action.AWAIT_PRE_JOB:
            return await self._await_gate(application, step, status, observed, GatePhase.PRE, now)
        if action == Action.APPLY:
            return await self._apply(application, step, status, observed, now)
        if action == Action.AWAIT_READY:
            return self._await_ready(step, status, observed, now)
        if action == Action.START_POST_JOB:
            return await self._start_gate(application, step, status, observed, GatePhase.POST, now)
        if action == Action.AWAIT_POST_JOB:
            return await self._await_gate(application, step, status, observed, GatePhase.POST, now)
        if action == Action.MARK_CONVERGED:
            return self._converged(step, status, now)
        raise ValueError(f"Unknown action: {action}")

    async def _start_gate(self, application, step, status, observed, gate: GatePhase, now) -> ComponentStatus:
        phase = Phase.PRE_JOB if gate == GatePhase.PRE else Phase.POST_JOB
        job_name = job_name_for(
            application.key, step.name, gate, step.component.version, status.rollout, status.attempts
        )
        status = self._transition(status, phase, now, job_name=job_name, next_retry_time=None, resume_phase=None)
        return await self._await_gate(application, step, status, observed, gate, now)

    async def _await_gate(self, application, step, status, observed, gate: GatePhase, now) -> ComponentStatus:
        phase = Phase.PRE_JOB if gate == GatePhase.PRE else Phase.POST_JOB
        job_name = status.job_name or job_name_for(
            application.key, step.name, gate, step.component.version, status.rollout, status.attempts
        )

        if self._expired(status, self.job_deadline_seconds, now):
            return self._fail(
                step.name,
                status,
                phase,
                f"{gate.value}-update job {job_name} exceeded its {int(self.job_deadline_seconds)}s deadline",
                now,
            )

        try:
            state = await self.gate.advance(
                application.key, step.name, step.component, gate, job_name, application.spec.global_config
            )
        except JobFailed as e:
            return self._fail(step.name, status, phase, str(e), now)

        if state == GateState.SUCCEEDED:
            if gate == GatePhase.PRE:
                status = self._enter_updating(status, observed, now)
                return status.model_copy(update={"message": f"pre-update job {job_name} succeeded"})
            return self._converged(step, status, now)

        return status.model_copy(update={
            "job_name": job_name,
            "message": f"waiting for {gate.value}-update job {job_name}",
        })

    async def _apply(self, application, step, status, observed, now) -> ComponentStatus:
        spec = step.component
        if status.phase != Phase.UPDATING:
            status = self._enter_updating(status, observed, now)

        replicas = target_replicas(spec, status, step.bounds)
        global_config = application.spec.global_config
        request = WorkloadRequest(
            version=spec.version,
            image=global_config.resolve_image(spec.image),
            replicas=replicas,
            resources=spec.resources,
            global_config=global_config,
            bounds=step.bounds,
        )
        await self.workloads.apply(application.key, step.name, request)
        logger.info(f"Applied {application.key}/{step.name} version {spec.version} with {replicas} replicas")
        return status.model_copy(update={"message": self._rollout_message(spec, status, observed, step)})

    def _await_ready(self, step, status, observed, now) -> ComponentStatus:
        spec = step.component
        if status.phase != Phase.UPDATING:
            status = self._enter_updating(status, observed, now)

        if (
            step.bounds.recreate
            and changes_version(spec, status)
            and not status.scaled_down
            and observed.replicas == 0
            and observed.ready_replicas == 0
        ):
            logger.info(f"Component {step.name} scaled to zero; scaling up version {spec.version}")
            return status.model_copy(update={
                "scaled_down": True,
                "phase_start_time": now,
                "message": f"old instances gone, scaling up version {spec.version}",
            })

        if self._expired(status, self.progress_deadline_seconds, now):
            return self._fail(
                step.name,
                status,
                Phase.UPDATING,
                f"rollout of version {spec.version} did not complete within {int(self.progress_deadline_seconds)}s",
                now,
            )
        return status.model_copy(update={"message": self._rollout_message(spec, status, observed, step)})

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------
    def _enter_updating(self, status: ComponentStatus, observed: ComponentObserved, now: datetime) -> ComponentStatus:
        nothing_running = not observed.exists or (observed.replicas == 0 and observed.ready_replicas == 0)
        return self._transition(
            status,
            Phase.UPDATING,
            now,
            job_name=None,
            next_retry_time=None,
            resume_phase=None,
            scaled_down=nothing_running,
        )

    def _converged(self, step: PlannedStep, status: ComponentStatus, now: datetime) -> ComponentStatus:
        logger.info(f"Component {step.name} converged at version {step.component.version}")
        return self._transition(
            status,
            Phase.CONVERGED,
            now,
            current_version=step.component.version,
            desired_version=step.component.version,
            attempts=0,
            next_retry_time=None,
            resume_phase=None,
            job_name=None,
            scaled_down=False,
            phase_start_time=None,
            message=f"version {step.component.version} converged",
        )

    def _fail(self, name: str, status: ComponentStatus, resume: Phase, reason: str, now: datetime) -> ComponentStatus:
        attempts = status.attempts + 1
        next_retry = now + timedelta(seconds=int(self.backoff(attempts)))
        logger.warning(f"Component {name} failed in {resume.value} (attempt {attempts}): {reason}")
        return self._transition(
            status,
            Phase.FAILED,
            now,
            attempts=attempts,
            next_retry_time=next_retry,
            resume_phase=resume,
            message=f"{reason}; retry {attempts} after {next_retry.isoformat()}",
        )

    def backoff(self, attempts: int) -> float:
        """Exponential backoff, capped, with downward jitter."""
        delay = min(self.retry_max_seconds, self.retry_base_seconds * (2 ** max(attempts - 1, 0)))
        delay -= delay * self.retry_jitter * self.rng.random()
        return max(delay, 1.0)

    @staticmethod
    def _transition(status: ComponentStatus, phase: Phase, now: datetime, **changes) -> ComponentStatus:
        if phase != status.phase:
            changes.setdefault("last_transition_time", now)
            changes.setdefault("phase_start_time", now)
        changes["phase"] = phase
        return status.model_copy(update=changes)

    @staticmethod
    def _landed(observed: ComponentObserved) -> bool:
        """The workload's version finished rolling out, whatever replica count was asked for."""
        return (
            observed.exists
            and observed.error is None
            and observed.updated_replicas >= observed.spec_replicas
            and observed.ready_replicas >= observed.spec_replicas
            and observed.replicas <= observed.spec_replicas
        )

    @staticmethod
    def _expired(status: ComponentStatus, deadline_seconds: float, now: datetime) -> bool:
        if status.phase_start_time is None or deadline_seconds <= 0:
            return False
        return (now - status.phase_start_time).total_seconds() > deadline_seconds

    @staticmethod
    def _rollout_message(spec: ComponentSpec, status: ComponentStatus, observed: ComponentObserved, step) -> str:
        if target_replicas(spec, status, step.bounds) == 0 and spec.replicas > 0:
            return f"scaling down {observed.replicas} instances before version {spec.version}"
        return (
            f"rolling out version {spec.version}: "
            f"{observed.updated_replicas}/{spec.replicas} updated, {observed.ready_replicas}/{spec.replicas} ready"
        )
