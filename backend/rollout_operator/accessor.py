"""
Read-only snapshot of desired and observed state for one application.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .backends import StatusStore, WorkloadBackend
from .errors import SpecInvalid, TransientError
from .kube_types import AppKey, Application, ApplicationSpec, ApplicationStatus, ComponentObserved
from .strategy import resolve_bounds, validate_strategy

logger = logging.getLogger(__name__)

COMPONENT_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


@dataclass
class Snapshot:
    key: AppKey
    status: ApplicationStatus
    token: str
    generation: int = 0
    application: Optional[Application] = None
    observed: Dict[str, ComponentObserved] = field(default_factory=dict)
    spec_error: Optional[SpecInvalid] = None


def parse_application(key: AppKey, spec: Dict[str, Any], generation: int = 0) -> Application:
    """
    Validate a raw spec into the engine model.

    Raises:
        SpecInvalid: unknown strategy type, malformed percentage, bad component name, ...
    """
    try:
        parsed = ApplicationSpec.model_validate(spec or {})
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise SpecInvalid(first.get("msg", str(e)), location or None) from e

    validate_strategy(parsed.update_strategy)
    for name, component in parsed.components.items():
        if not COMPONENT_NAME_PATTERN.match(name):
            raise SpecInvalid(f"component name {name!r} must be a lowercase DNS label", f"components.{name}")
        resolve_bounds(parsed.update_strategy, component.replicas)

    return Application(key=key, spec=parsed, generation=generation)


class StateAccessor:
    """Builds a snapshot without mutating anything."""

    def __init__(self, store: StatusStore, workloads: WorkloadBackend):
        self.store = store
        self.workloads = workloads

    async def load(self, key: AppKey) -> Snapshot:
        """
        Read the application and observe every declared component.

        Store failures propagate. A failure observing one component is recorded
        on that component's observation only.
        """
        stored = await self.store.get(key)
        snapshot = Snapshot(key=key, status=stored.status, token=stored.token, generation=stored.generation)

        try:
            snapshot.application = parse_application(key, stored.spec, stored.generation)
        except SpecInvalid as e:
            logger.warning(f"Spec of {key} is invalid: {e}")
            snapshot.spec_error = e
            return snapshot

        names = list(snapshot.application.spec.components)
        observations = await asyncio.gather(*(self._observe(key, name) for name in names))
        snapshot.observed = dict(zip(names, observations))
        return snapshot

    async def _observe(self, key: AppKey, component: str) -> ComponentObserved:
        try:
            return await self.workloads.observe(key, component)
        except TransientError as e:
            logger.warning(f"Could not observe {key}/{component}: {e}")
            return ComponentObserved(error=str(e) or type(e).__name__)
