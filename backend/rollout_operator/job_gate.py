"""
Pre/post update jobs as blocking gates around a component's update.
"""
import hashlib
import logging
import re
from enum import Enum
from typing import Optional

from .backends import JobBackend
from .errors import JobFailed
from .kube_types import AppKey, ComponentSpec, DispatchResult, GlobalConfig, JobState

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 63


class GatePhase(str, Enum):
    PRE = "pre"
    POST = "post"


class GateState(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"


def job_name_for(key: AppKey, component: str, phase: GatePhase, version: str, rollout: int, attempt: int) -> str:
    """
    Deterministic job name for one attempt at one gate.

    The same inputs always map to the same name, so a duplicate invocation
    finds the job it dispatched earlier. A retry after failure (higher
    attempt) gets a fresh one, and so does a later rollout of a version that
    was deployed before (higher rollout). Names are DNS-1123 labels; long ones are
    truncated with a hash suffix to stay unique.
    """
    raw = f"{key.name}-{component}-{phase.value}-{version}-{rollout}-{attempt}"
    name = re.sub(r"[^a-z0-9-]+", "-", raw.lower()).strip("-")
    name = re.sub(r"-{2,}", "-", name)
    if len(name) > MAX_NAME_LENGTH:
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
        name = f"{name[:MAX_NAME_LENGTH - 9].rstrip('-')}-{digest}"
    return name


class JobGate:
    """Drives one gate job to completion across reconciliations."""

    def __init__(self, jobs: JobBackend):
        self.jobs = jobs

    async def advance(
        self,
        key: AppKey,
        name: str,
        component: ComponentSpec,
        phase: GatePhase,
        job_name: str,
        global_config: Optional[GlobalConfig] = None,
    ) -> GateState:
        """
        Dispatch the gate job once, then report its progress.

        Args:
            key: Owning application
            name: Component name
            component: Component spec holding the job declarations
            phase: Which gate to advance
            job_name: Name of the attempt being driven
            global_config: Registry and scheduling settings applied to the job

        Returns:
            GateState.RUNNING or GateState.SUCCEEDED

        Raises:
            JobFailed: the job finished unsuccessfully
        """
        job = component.pre_update_job if phase == GatePhase.PRE else component.post_update_job
        if job is None:
            return GateState.SUCCEEDED

        state = await self.jobs.status(key, job_name)
        if state == JobState.NOT_FOUND:
            result = await self.jobs.dispatch(key, name, job_name, job, global_config)
            if result == DispatchResult.DISPATCHED:
                logger.info(f"Dispatched {phase.value}-update job {job_name} for {key}/{name}")
            else:
                logger.debug(f"Job {job_name} for {key}/{name} was already dispatched")
            return GateState.RUNNING

        if state == JobState.FAILED:
            raise JobFailed(job_name, f"{phase.value}-update job did not succeed")
        if state == JobState.SUCCEEDED:
            logger.info(f"{phase.value}-update job {job_name} for {key}/{name} succeeded")
            return GateState.SUCCEEDED

        logger.debug(f"Job {job_name} for {key}/{name} still running")
        return GateState.RUNNING
