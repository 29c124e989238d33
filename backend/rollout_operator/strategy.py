"""
Rolling-update bounds and admission checks.

Percentages resolve against a component's desired replica count: rounded down
for maxUnavailable and up for maxSurge. Bounds that resolve to zero on both
sides are rejected, since no rollout could make progress under them.
"""
from dataclasses import dataclass
from typing import Optional

from .errors import SpecInvalid
from .kube_types import PERCENT_PATTERN, ComponentObserved, IntOrPercent, StrategyType, UpdateStrategy


@dataclass(frozen=True)
class RolloutBounds:
    max_unavailable: int
    max_surge: int
    recreate: bool = False


def resolve_int_or_percent(value: IntOrPercent, total: int, round_up: bool, field: str = "") -> int:
    """
    Resolve an absolute count or percentage against a replica total.

    Args:
        value: Integer count or string such as ``"25%"``
        total: Replica count the percentage applies to
        round_up: Ceil instead of floor the scaled value

    Returns:
        Absolute instance count
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise SpecInvalid(f"{value} must not be negative", field)
        return value

    match = PERCENT_PATTERN.match(str(value).strip())
    if not match:
        raise SpecInvalid(f"{value!r} is not an integer or a percentage", field)

    percent = int(match.group(1))
    if round_up:
        return (percent * total + 99) // 100
    return (percent * total) // 100


def _is_zero(value: IntOrPercent) -> bool:
    if isinstance(value, int):
        return value == 0
    match = PERCENT_PATTERN.match(str(value).strip())
    return bool(match) and int(match.group(1)) == 0


def validate_strategy(strategy: UpdateStrategy) -> None:
    if strategy.type == StrategyType.RECREATE:
        return
    if _is_zero(strategy.max_unavailable) and _is_zero(strategy.max_surge):
        raise SpecInvalid("maxUnavailable and maxSurge must not both be zero", "updateStrategy")
    resolve_int_or_percent(strategy.max_unavailable, 0, False, "updateStrategy.maxUnavailable")
    resolve_int_or_percent(strategy.max_surge, 0, True, "updateStrategy.maxSurge")


def resolve_bounds(strategy: UpdateStrategy, replicas: int) -> RolloutBounds:
    """Resolve the strategy into absolute bounds for one component."""
    if strategy.type == StrategyType.RECREATE:
        return RolloutBounds(max_unavailable=replicas, max_surge=0, recreate=True)

    max_unavailable = resolve_int_or_percent(
        strategy.max_unavailable, replicas, False, "updateStrategy.maxUnavailable"
    )
    max_surge = resolve_int_or_percent(strategy.max_surge, replicas, True, "updateStrategy.maxSurge")
    if max_unavailable == 0 and max_surge == 0 and replicas > 0:
        raise SpecInvalid(
            f"maxUnavailable and maxSurge both resolve to 0 for {replicas} replicas",
            "updateStrategy",
        )
    return RolloutBounds(max_unavailable=max_unavailable, max_surge=max_surge)


def check_admission(bounds: RolloutBounds, observed: ComponentObserved) -> Optional[str]:
    """
    Check whether a workload change may start now.

    Disruption is measured against the replica count the workload currently
    targets, so scaling a component up or down is never mistaken for an
    outage. A missing workload, or one with no ready instances, has nothing
    left to protect.

    Returns:
        None when admitted, otherwise the reason the change is withheld
    """
    if bounds.recreate or not observed.exists or observed.ready_replicas == 0:
        return None

    unavailable = max(observed.spec_replicas - observed.ready_replicas, 0)
    if unavailable > bounds.max_unavailable:
        return f"{unavailable} unavailable replicas exceed maxUnavailable {bounds.max_unavailable}"

    surge = max(observed.replicas - observed.spec_replicas, 0)
    if surge > bounds.max_surge:
        return f"{surge} surge replicas exceed maxSurge {bounds.max_surge}"
    return None
