"""
Ordering and admission planner.

Given the normalized component statuses and the observed workloads, decide
which components may advance this cycle and what each one's next micro-step
is. Components update strictly by ascending update order (ties by name); a
component with order N only moves once every component with a smaller order
is converged or failed. Components sharing an order advance side by side.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from .kube_types import Application, ComponentObserved, ComponentSpec, ComponentStatus, Phase
from .strategy import RolloutBounds, check_admission, resolve_bounds


class Action(str, Enum):
    START_PRE_JOB = "StartPreJob"
    AWAIT_PRE_JOB = "AwaitPreJob"
    APPLY = "Apply"
    AWAIT_READY = "AwaitReady"
    START_POST_JOB = "StartPostJob"
    AWAIT_POST_JOB = "AwaitPostJob"
    MARK_CONVERGED = "MarkConverged"


@dataclass
class PlannedStep:
    name: str
    component: ComponentSpec
    action: Action
    bounds: RolloutBounds


@dataclass
class Plan:
    steps: List[PlannedStep] = field(default_factory=list)
    # components that got no step, with the reason they are held back
    waiting: Dict[str, str] = field(default_factory=dict)

    def step_for(self, name: str) -> Optional[PlannedStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None


def rollout_complete(spec: ComponentSpec, observed: ComponentObserved) -> bool:
    """Every instance runs the desired version and is ready, with no extras left."""
    return (
        observed.exists
        and observed.error is None
        and observed.current_version == spec.version
        and observed.spec_replicas == spec.replicas
        and observed.updated_replicas >= spec.replicas
        and observed.ready_replicas >= spec.replicas
        and observed.replicas <= spec.replicas
    )


def is_settled(spec: ComponentSpec, status: ComponentStatus, observed: ComponentObserved) -> bool:
    return (
        status.phase == Phase.CONVERGED
        and status.current_version == spec.version
        and rollout_complete(spec, observed)
    )


def changes_version(spec: ComponentSpec, status: ComponentStatus) -> bool:
    """Jobs gate version changes only; replica or readiness drift skips them."""
    return status.current_version != spec.version


def target_replicas(spec: ComponentSpec, status: ComponentStatus, bounds: RolloutBounds) -> int:
    """Recreate holds a changing version at zero until the old instances are gone."""
    if bounds.recreate and changes_version(spec, status) and not status.scaled_down:
        return 0
    return spec.replicas


def needs_apply(
    spec: ComponentSpec, status: ComponentStatus, observed: ComponentObserved, bounds: RolloutBounds
) -> bool:
    if not observed.exists:
        return True
    return (
        observed.current_version != spec.version
        or observed.spec_replicas != target_replicas(spec, status, bounds)
    )


class UpdatePlanner:
    """Selects the components allowed to advance and their next micro-step."""

    def plan(
        self,
        application: Application,
        statuses: Mapping[str, ComponentStatus],
        observed: Mapping[str, ComponentObserved],
        now: datetime,
    ) -> Plan:
        ordered = application.ordered_components()
        strategy = application.spec.update_strategy
        plan = Plan()

        for name, spec in ordered:
            status = statuses[name]
            obs = observed.get(name) or ComponentObserved()
            bounds = resolve_bounds(strategy, spec.replicas)

            action, reason = self._next_action(spec, status, obs, bounds, now)
            if action is None:
                if reason:
                    plan.waiting[name] = reason
                continue

            # recording an already-landed version starts nothing, so it is never held back
            if action != Action.MARK_CONVERGED:
                blockers = [
                    other
                    for other, other_spec in ordered
                    if other_spec.update_order < spec.update_order
                    and not self._clears_order(other_spec, statuses[other], observed.get(other))
                ]
                if blockers:
                    plan.waiting[name] = f"waiting for {', '.join(blockers)} to converge"
                    continue

            plan.steps.append(PlannedStep(name=name, component=spec, action=action, bounds=bounds))

        return plan

    @staticmethod
    def _clears_order(
        spec: ComponentSpec, status: ComponentStatus, observed: Optional[ComponentObserved]
    ) -> bool:
        if status.phase == Phase.FAILED:
            return True
        return is_settled(spec, status, observed or ComponentObserved())

    def _next_action(
        self,
        spec: ComponentSpec,
        status: ComponentStatus,
        observed: ComponentObserved,
        bounds: RolloutBounds,
        now: datetime,
    ) -> Tuple[Optional[Action], str]:
        phase = status.phase

        if observed.error is not None or phase == Phase.UNKNOWN:
            return None, f"workload state unknown: {observed.error or 'not observed'}"

        if phase == Phase.FAILED:
            if status.next_retry_time is not None and now < status.next_retry_time:
                return None, f"retrying after {status.next_retry_time.isoformat()}"
            resume = status.resume_phase or Phase.PENDING
            if resume == Phase.PRE_JOB:
                return Action.START_PRE_JOB, ""
            if resume == Phase.POST_JOB:
                return Action.START_POST_JOB, ""
            if resume == Phase.UPDATING:
                return self._admit(Action.APPLY, bounds, observed)
            phase = Phase.PENDING

        if phase in (Phase.PENDING, Phase.CONVERGED):
            if rollout_complete(spec, observed):
                if phase == Phase.CONVERGED and status.current_version == spec.version:
                    return None, ""
                return Action.MARK_CONVERGED, ""
            if spec.pre_update_job is not None and changes_version(spec, status):
                return Action.START_PRE_JOB, ""
            if needs_apply(spec, status, observed, bounds):
                return self._admit(Action.APPLY, bounds, observed)
            return Action.AWAIT_READY, ""

        if phase == Phase.PRE_JOB:
            return Action.AWAIT_PRE_JOB, ""

        if phase == Phase.UPDATING:
            if rollout_complete(spec, observed):
                if spec.post_update_job is not None and changes_version(spec, status):
                    return Action.START_POST_JOB, ""
                return Action.MARK_CONVERGED, ""
            if needs_apply(spec, status, observed, bounds):
                return self._admit(Action.APPLY, bounds, observed)
            return Action.AWAIT_READY, ""

        if phase == Phase.POST_JOB:
            return Action.AWAIT_POST_JOB, ""

        return None, f"unhandled phase {phase.value}"

    @staticmethod
    def _admit(action: Action, bounds: RolloutBounds, observed: ComponentObserved) -> Tuple[Optional[Action], str]:
        violation = check_admission(bounds, observed)
        if violation:
            return None, f"update withheld: {violation}"
        return action, ""
