"""
Collaborator interfaces consumed by the reconciliation engine.

Implementations must translate their own failures into TransientError (or
ConflictError / ApplicationNotFound where noted) so the engine can tell
retryable problems apart from component failures.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .kube_types import (
    AppKey,
    ApplicationStatus,
    ComponentObserved,
    DispatchResult,
    GlobalConfig,
    JobSpec,
    JobState,
    ResourceRequirements,
    StoredApplication,
)
from .strategy import RolloutBounds


@dataclass
class WorkloadRequest:
    """Desired state handed to the workload backend for one component."""
    version: str
    image: str
    replicas: int
    resources: ResourceRequirements
    global_config: GlobalConfig
    bounds: RolloutBounds


class StatusStore(ABC):
    """Abstract store holding application specs and engine-written status"""

    @abstractmethod
    async def get(self, key: AppKey) -> StoredApplication:
        """
        Read an application with its current status and version token

        Raises:
            ApplicationNotFound: the application was deleted
            TransientError: the store could not be reached
        """
        pass

    @abstractmethod
    async def update_status(self, key: AppKey, status: ApplicationStatus, token: str) -> str:
        """
        Replace the application's status if the token is still current

        Returns:
            New version token

        Raises:
            ConflictError: another writer changed the resource first
        """
        pass

    @abstractmethod
    async def list_keys(self) -> List[AppKey]:
        """List every application the engine is responsible for"""
        pass


class WorkloadBackend(ABC):
    """Abstract owner of the objects that run a component's instances"""

    @abstractmethod
    async def apply(self, key: AppKey, component: str, request: WorkloadRequest) -> None:
        """Create or update the component's workload; applying the same request twice is a no-op"""
        pass

    @abstractmethod
    async def observe(self, key: AppKey, component: str) -> ComponentObserved:
        """Return the live state, with ``exists=False`` when no workload was created yet"""
        pass


class JobBackend(ABC):
    """Abstract executor for pre/post update jobs"""

    @abstractmethod
    async def dispatch(
        self,
        key: AppKey,
        component: str,
        job_name: str,
        job: JobSpec,
        global_config: Optional[GlobalConfig] = None,
    ) -> DispatchResult:
        """Start a job under the given name unless one already exists"""
        pass

    @abstractmethod
    async def status(self, key: AppKey, job_name: str) -> JobState:
        """Report the outcome of a dispatched job"""
        pass
