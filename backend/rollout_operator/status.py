"""
Status aggregator: folds component outcomes into application status.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from .errors import SpecInvalid
from .kube_types import (
    Application,
    ApplicationStatus,
    ComponentStatus,
    Condition,
    ConditionType,
    Phase,
)

logger = logging.getLogger(__name__)

CONDITION_ORDER = [
    ConditionType.AVAILABLE,
    ConditionType.PROGRESSING,
    ConditionType.DEGRADED,
    ConditionType.SPEC_INVALID,
]


def _names(components: Dict[str, ComponentStatus], *phases: Phase) -> List[str]:
    return sorted(name for name, status in components.items() if status.phase in phases)


class StatusAggregator:
    """Builds the ApplicationStatus written at the end of each reconciliation."""

    def fold(
        self,
        application: Application,
        previous: ApplicationStatus,
        components: Dict[str, ComponentStatus],
        now: datetime,
    ) -> ApplicationStatus:
        """
        Combine per-component statuses into the application's status.

        Entries for components no longer declared are dropped. Conditions keep
        their transition time unless their status flips.
        """
        declared = set(application.spec.components)
        removed = sorted(set(previous.component_status) - declared)
        if removed:
            logger.info(f"Pruning status of removed components {removed} from {application.key}")
        kept = {name: components[name] for name in sorted(components) if name in declared}

        converged = _names(kept, Phase.CONVERGED)
        progressing = _names(kept, Phase.PENDING, Phase.PRE_JOB, Phase.UPDATING, Phase.POST_JOB)
        failing = _names(kept, Phase.FAILED, Phase.UNKNOWN)

        desired = {
            ConditionType.AVAILABLE: (
                ("True", "AllComponentsConverged", f"{len(converged)} components converged")
                if len(converged) == len(kept)
                else ("False", "ComponentsNotConverged", f"not converged: {', '.join(sorted(set(kept) - set(converged)))}")
            ),
            ConditionType.PROGRESSING: (
                ("True", "RolloutInProgress", f"updating: {', '.join(progressing)}")
                if progressing
                else ("False", "NoRolloutInProgress", "")
            ),
            ConditionType.DEGRADED: (
                ("True", "ComponentFailed", "; ".join(f"{name}: {kept[name].message}" for name in failing))
                if failing
                else ("False", "NoFailures", "")
            ),
            ConditionType.SPEC_INVALID: ("False", "SpecValid", ""),
        }

        status = ApplicationStatus(
            component_status=kept,
            conditions=self._conditions(previous, desired, now),
            last_update_time=previous.last_update_time,
            observed_generation=application.generation,
        )
        return self._stamp(previous, status, now)

    def mark_invalid(
        self, previous: ApplicationStatus, error: SpecInvalid, generation: int, now: datetime
    ) -> ApplicationStatus:
        """Record a spec that cannot be reconciled; component entries are left untouched."""
        desired = {
            ConditionType.PROGRESSING: ("False", "ReconciliationHalted", "waiting for the spec to be fixed"),
            ConditionType.SPEC_INVALID: ("True", "InvalidSpec", str(error)),
        }
        for condition_type in (ConditionType.AVAILABLE, ConditionType.DEGRADED):
            existing = previous.condition(condition_type)
            if existing is not None:
                desired[condition_type] = (existing.status, existing.reason, existing.message)

        status = ApplicationStatus(
            component_status=dict(previous.component_status),
            conditions=self._conditions(previous, desired, now),
            last_update_time=previous.last_update_time,
            observed_generation=generation,
        )
        return self._stamp(previous, status, now)

    @staticmethod
    def _conditions(previous: ApplicationStatus, desired: Dict, now: datetime) -> List[Condition]:
        conditions = []
        for condition_type in CONDITION_ORDER:
            if condition_type not in desired:
                continue
            status, reason, message = desired[condition_type]
            existing: Optional[Condition] = previous.condition(condition_type)
            if existing is not None and existing.status == status:
                transition_time = existing.last_transition_time
            elif existing is not None:
                # never move behind a timestamp another writer already recorded
                transition_time = max(now, existing.last_transition_time)
            else:
                transition_time = now
            conditions.append(Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition_time,
            ))
        return conditions

    @staticmethod
    def _stamp(previous: ApplicationStatus, status: ApplicationStatus, now: datetime) -> ApplicationStatus:
        """Bump lastUpdateTime only when something else changed."""
        if status == previous:
            return status
        last = previous.last_update_time
        return status.model_copy(update={"last_update_time": max(now, last) if last else now})
