"""
Type definitions for application resources and the objects the engine observes.

The pydantic models mirror the persisted layouts (the user-declared spec and
the engine-written status, camelCase on the wire). The dataclasses are derived
per reconciliation and never persisted.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

PERCENT_PATTERN = re.compile(r"^(\d+)%$")

IntOrPercent = Union[int, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class StrategyType(str, Enum):
    ROLLING_UPDATE = "RollingUpdate"
    RECREATE = "Recreate"


class Phase(str, Enum):
    """Per-component update phase."""

    PENDING = "Pending"
    PRE_JOB = "PreJob"
    UPDATING = "Updating"
    POST_JOB = "PostJob"
    CONVERGED = "Converged"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @property
    def in_flight(self) -> bool:
        return self in (Phase.PRE_JOB, Phase.UPDATING, Phase.POST_JOB)


class ConditionType(str, Enum):
    AVAILABLE = "Available"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SPEC_INVALID = "SpecInvalid"


class JobState(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    NOT_FOUND = "NotFound"


class DispatchResult(str, Enum):
    DISPATCHED = "Dispatched"
    ALREADY_DISPATCHED = "AlreadyDispatched"


# -----------------------------------------------------------------------------
# Declared spec
# -----------------------------------------------------------------------------
class JobSpec(BaseModel):
    """One-shot unit of work run before or after a component update."""
    image: str
    command: List[str] = Field(default_factory=list)
    args: List[str] = Field(default_factory=list)


class ResourceRequirements(BaseModel):
    limits: Dict[str, str] = Field(default_factory=dict)
    requests: Dict[str, str] = Field(default_factory=dict)


class ComponentSpec(BaseModel):
    version: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    replicas: int = Field(default=1, ge=0)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    update_order: int = Field(default=0, alias="updateOrder")
    pre_update_job: Optional[JobSpec] = Field(default=None, alias="preUpdateJob")
    post_update_job: Optional[JobSpec] = Field(default=None, alias="postUpdateJob")

    class Config:
        populate_by_name = True


class UpdateStrategy(BaseModel):
    type: StrategyType = StrategyType.ROLLING_UPDATE
    max_unavailable: IntOrPercent = Field(default="25%", alias="maxUnavailable")
    max_surge: IntOrPercent = Field(default="25%", alias="maxSurge")

    class Config:
        populate_by_name = True

    @field_validator("max_unavailable", "max_surge")
    @classmethod
    def _int_or_percent(cls, value):
        if isinstance(value, bool):
            raise ValueError("must be an integer or a percentage")
        if isinstance(value, int):
            if value < 0:
                raise ValueError("must not be negative")
            return value
        if not PERCENT_PATTERN.match(value.strip()):
            raise ValueError(f"{value!r} is not an integer or a percentage like '25%'")
        return value.strip()


class GlobalConfig(BaseModel):
    registry: str = ""
    image_pull_secret: str = Field(default="", alias="imagePullSecret")
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    node_selector: Dict[str, str] = Field(default_factory=dict, alias="nodeSelector")

    class Config:
        populate_by_name = True

    def resolve_image(self, image: str) -> str:
        """Prefix the default registry onto images that name no registry host."""
        if not self.registry:
            return image
        first = image.split("/", 1)[0]
        if "/" in image and ("." in first or ":" in first or first == "localhost"):
            return image
        return f"{self.registry.rstrip('/')}/{image}"


class ApplicationSpec(BaseModel):
    components: Dict[str, ComponentSpec] = Field(default_factory=dict)
    update_strategy: UpdateStrategy = Field(default_factory=UpdateStrategy, alias="updateStrategy")
    global_config: GlobalConfig = Field(default_factory=GlobalConfig, alias="globalConfig")

    class Config:
        populate_by_name = True


# -----------------------------------------------------------------------------
# Engine-written status
# -----------------------------------------------------------------------------
class ComponentStatus(BaseModel):
    current_version: str = Field(default="", alias="currentVersion")
    desired_version: str = Field(default="", alias="desiredVersion")
    phase: Phase = Phase.PENDING
    message: str = ""
    ready_replicas: int = Field(default=0, alias="readyReplicas")
    updated_replicas: int = Field(default=0, alias="updatedReplicas")
    # bumped on every desired-version change and never reset; part of gate job names
    rollout: int = 0
    # retry / resume bookkeeping, persisted so any engine instance can resume
    attempts: int = 0
    next_retry_time: Optional[datetime] = Field(default=None, alias="nextRetryTime")
    resume_phase: Optional[Phase] = Field(default=None, alias="resumePhase")
    job_name: Optional[str] = Field(default=None, alias="jobName")
    phase_start_time: Optional[datetime] = Field(default=None, alias="phaseStartTime")
    scaled_down: bool = Field(default=False, alias="scaledDown")
    last_transition_time: Optional[datetime] = Field(default=None, alias="lastTransitionTime")

    class Config:
        populate_by_name = True


class Condition(BaseModel):
    type: ConditionType
    status: str = "Unknown"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utc_now, alias="lastTransitionTime")

    class Config:
        populate_by_name = True


class ApplicationStatus(BaseModel):
    component_status: Dict[str, ComponentStatus] = Field(default_factory=dict, alias="componentStatus")
    conditions: List[Condition] = Field(default_factory=list)
    last_update_time: Optional[datetime] = Field(default=None, alias="lastUpdateTime")
    observed_generation: int = Field(default=0, alias="observedGeneration")

    class Config:
        populate_by_name = True

    @classmethod
    def from_manifest(cls, data: Optional[Dict[str, Any]]) -> "ApplicationStatus":
        return cls.model_validate(data or {})

    def to_manifest(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


# -----------------------------------------------------------------------------
# Derived, never persisted
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AppKey:
    """Identity of one application resource."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class Application:
    key: AppKey
    spec: ApplicationSpec
    generation: int = 0

    def ordered_components(self) -> List[Tuple[str, ComponentSpec]]:
        """Components sorted by update order, ties broken by name."""
        return sorted(self.spec.components.items(), key=lambda item: (item[1].update_order, item[0]))


@dataclass
class ComponentObserved:
    """Live workload state for one component."""
    exists: bool = False
    replicas: int = 0
    spec_replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    current_version: str = ""
    error: Optional[str] = None


@dataclass
class StoredApplication:
    """Application resource as read from the store."""
    key: AppKey
    spec: Dict[str, Any]
    status: ApplicationStatus = field(default_factory=ApplicationStatus)
    token: str = ""
    generation: int = 0
