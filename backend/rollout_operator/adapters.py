"""
Kubernetes-backed implementations of the engine's collaborators.

Blocking client calls run in worker threads. ``ApiException`` is translated
here and nowhere else: 404 means absent, 409 means conflict (or an already
dispatched job), anything else is transient.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .backends import JobBackend, StatusStore, WorkloadBackend, WorkloadRequest
from .errors import ApplicationNotFound, ConflictError, TransientError
from .kube_client import KubeClient
from .kube_types import (
    AppKey,
    ApplicationStatus,
    ComponentObserved,
    DispatchResult,
    GlobalConfig,
    JobSpec,
    JobState,
    StoredApplication,
)

logger = logging.getLogger(__name__)

NAME_LABEL = "app.kubernetes.io/name"
INSTANCE_LABEL = "app.kubernetes.io/instance"
COMPONENT_LABEL = "app.kubernetes.io/component"
VERSION_LABEL = "app.kubernetes.io/version"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "rollout-operator"

_serializer = client.ApiClient()


def workload_name(key: AppKey, component: str) -> str:
    return f"{key.name}-{component}"


def component_labels(key: AppKey, component: str) -> Dict[str, str]:
    return {
        NAME_LABEL: key.name,
        INSTANCE_LABEL: workload_name(key, component),
        COMPONENT_LABEL: component,
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def _translate(e: ApiException, what: str) -> Exception:
    if e.status == 409:
        return ConflictError(f"{what}: conflict")
    return TransientError(f"{what}: {e.status} {e.reason}")


async def _call(fn: Callable, *args, **kwargs) -> Any:
    return await asyncio.to_thread(fn, *args, **kwargs)


def _pod_spec(containers: List[client.V1Container], global_config: GlobalConfig, **extra) -> client.V1PodSpec:
    pull_secrets = None
    if global_config.image_pull_secret:
        pull_secrets = [client.V1LocalObjectReference(name=global_config.image_pull_secret)]
    return client.V1PodSpec(
        containers=containers,
        image_pull_secrets=pull_secrets,
        tolerations=global_config.tolerations or None,
        node_selector=global_config.node_selector or None,
        **extra,
    )


def build_deployment(key: AppKey, component: str, request: WorkloadRequest) -> Dict[str, Any]:
    """
    Render the Deployment for one component.

    Args:
        key: Owning application
        component: Component name
        request: Desired version, image, replicas and rollout bounds

    Returns:
        Deployment manifest ready to create or patch
    """
    labels = component_labels(key, component)
    template_labels = {**labels, VERSION_LABEL: request.version}
    selector = {NAME_LABEL: labels[NAME_LABEL], COMPONENT_LABEL: component}

    container = client.V1Container(
        name=component,
        image=request.image,
        resources=client.V1ResourceRequirements(
            limits=request.resources.limits or None,
            requests=request.resources.requests or None,
        ),
    )

    if request.bounds.recreate:
        strategy = client.V1DeploymentStrategy(type="Recreate")
    else:
        strategy = client.V1DeploymentStrategy(
            type="RollingUpdate",
            rolling_update=client.V1RollingUpdateDeployment(
                max_unavailable=request.bounds.max_unavailable,
                max_surge=request.bounds.max_surge,
            ),
        )

    deployment = client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=workload_name(key, component),
            namespace=key.namespace,
            labels=template_labels,
        ),
        spec=client.V1DeploymentSpec(
            replicas=request.replicas,
            selector=client.V1LabelSelector(match_labels=selector),
            strategy=strategy,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=template_labels),
                spec=_pod_spec([container], request.global_config),
            ),
        ),
    )
    body = _serializer.sanitize_for_serialization(deployment)
    # a strategic merge patch only removes fields that are sent as null
    pod = body["spec"]["template"]["spec"]
    for optional in ("imagePullSecrets", "tolerations", "nodeSelector"):
        pod.setdefault(optional, None)
    resources = pod["containers"][0].setdefault("resources", {})
    for optional in ("limits", "requests"):
        resources.setdefault(optional, None)
    if request.bounds.recreate:
        # a patch must clear rollingUpdate explicitly when switching to Recreate
        body["spec"]["strategy"]["rollingUpdate"] = None
    return body


def build_job(
    key: AppKey,
    component: str,
    job_name: str,
    job: JobSpec,
    global_config: GlobalConfig,
    deadline_seconds: Optional[int] = None,
    ttl_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Render a run-once Job; failures are never retried by Kubernetes itself.

    With ``ttl_seconds`` the finished Job is garbage-collected after that long.
    """
    labels = component_labels(key, component)
    container = client.V1Container(
        name="job",
        image=global_config.resolve_image(job.image),
        command=job.command or None,
        args=job.args or None,
    )
    manifest = client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(name=job_name, namespace=key.namespace, labels=labels),
        spec=client.V1JobSpec(
            backoff_limit=0,
            active_deadline_seconds=deadline_seconds,
            ttl_seconds_after_finished=ttl_seconds,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=_pod_spec([container], global_config, restart_policy="Never"),
            ),
        ),
    )
    return _serializer.sanitize_for_serialization(manifest)


def observed_from_deployment(deployment: client.V1Deployment) -> ComponentObserved:
    """
    Summarize a Deployment for the planner.

    Updated counts are zeroed until the deployment controller has observed the
    latest generation, so a freshly patched workload never looks converged.
    """
    spec = deployment.spec
    status = deployment.status or client.V1DeploymentStatus()
    template_labels = (spec.template.metadata.labels or {}) if spec.template and spec.template.metadata else {}

    updated = status.updated_replicas or 0
    generation = deployment.metadata.generation or 0
    if (status.observed_generation or 0) < generation:
        updated = 0

    return ComponentObserved(
        exists=True,
        replicas=status.replicas or 0,
        spec_replicas=spec.replicas if spec.replicas is not None else 1,
        ready_replicas=status.ready_replicas or 0,
        updated_replicas=updated,
        current_version=template_labels.get(VERSION_LABEL, ""),
    )


def job_state_from(job: client.V1Job) -> JobState:
    status = job.status
    if status is None:
        return JobState.RUNNING
    if status.succeeded:
        return JobState.SUCCEEDED
    if status.failed:
        return JobState.FAILED
    for condition in status.conditions or []:
        if condition.type == "Failed" and condition.status == "True":
            return JobState.FAILED
    return JobState.RUNNING


class KubeWorkloadBackend(WorkloadBackend):
    """Runs each component as one Deployment."""

    def __init__(self, kube: KubeClient):
        self.kube = kube

    async def apply(self, key: AppKey, component: str, request: WorkloadRequest) -> None:
        name = workload_name(key, component)
        body = build_deployment(key, component, request)
        try:
            await _call(self.kube.read_deployment, key.namespace, name)
        except ApiException as e:
            if e.status != 404:
                raise _translate(e, f"read deployment {key.namespace}/{name}") from e
            try:
                await _call(self.kube.create_deployment, key.namespace, body)
                return
            except ApiException as create_error:
                raise _translate(create_error, f"create deployment {key.namespace}/{name}") from create_error

        try:
            await _call(self.kube.patch_deployment, key.namespace, name, body)
            logger.debug(f"Patched deployment {key.namespace}/{name} to version {request.version}")
        except ApiException as e:
            raise _translate(e, f"patch deployment {key.namespace}/{name}") from e

    async def observe(self, key: AppKey, component: str) -> ComponentObserved:
        name = workload_name(key, component)
        try:
            deployment = await _call(self.kube.read_deployment, key.namespace, name)
        except ApiException as e:
            if e.status == 404:
                return ComponentObserved(exists=False)
            raise TransientError(f"read deployment {key.namespace}/{name}: {e.status} {e.reason}") from e
        return observed_from_deployment(deployment)


class KubeJobBackend(JobBackend):
    """Runs pre/post update jobs as Kubernetes Jobs in the application's namespace."""

    def __init__(
        self,
        kube: KubeClient,
        deadline_seconds: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.kube = kube
        self.deadline_seconds = int(deadline_seconds) if deadline_seconds else None
        self.ttl_seconds = int(ttl_seconds) if ttl_seconds else None

    async def dispatch(
        self,
        key: AppKey,
        component: str,
        job_name: str,
        job: JobSpec,
        global_config: Optional[GlobalConfig] = None,
    ) -> DispatchResult:
        body = build_job(
            key, component, job_name, job, global_config or GlobalConfig(), self.deadline_seconds, self.ttl_seconds
        )
        try:
            await _call(self.kube.create_job, key.namespace, body)
        except ApiException as e:
            if e.status == 409:
                return DispatchResult.ALREADY_DISPATCHED
            raise TransientError(f"create job {key.namespace}/{job_name}: {e.status} {e.reason}") from e
        return DispatchResult.DISPATCHED

    async def status(self, key: AppKey, job_name: str) -> JobState:
        try:
            job = await _call(self.kube.read_job, key.namespace, job_name)
        except ApiException as e:
            if e.status == 404:
                return JobState.NOT_FOUND
            raise TransientError(f"read job {key.namespace}/{job_name}: {e.status} {e.reason}") from e
        return job_state_from(job)


class KubeStatusStore(StatusStore):
    """Application custom resources, with status written through the status subresource."""

    def __init__(self, kube: KubeClient):
        self.kube = kube

    async def get(self, key: AppKey) -> StoredApplication:
        try:
            obj = await _call(self.kube.get_application, key.namespace, key.name)
        except ApiException as e:
            if e.status == 404:
                raise ApplicationNotFound(str(key)) from e
            raise TransientError(f"read application {key}: {e.status} {e.reason}") from e
        return self._stored(key, obj)

    async def update_status(self, key: AppKey, status: ApplicationStatus, token: str) -> str:
        body = {
            "apiVersion": self.kube.api_version,
            "kind": "Application",
            "metadata": {"name": key.name, "namespace": key.namespace, "resourceVersion": token},
            "status": status.to_manifest(),
        }
        try:
            result = await _call(self.kube.replace_application_status, key.namespace, key.name, body)
        except ApiException as e:
            if e.status == 404:
                raise ApplicationNotFound(str(key)) from e
            raise _translate(e, f"write status of {key}") from e
        return (result.get("metadata") or {}).get("resourceVersion", "")

    async def list_keys(self) -> List[AppKey]:
        try:
            items = await _call(self.kube.list_applications)
        except ApiException as e:
            raise TransientError(f"list applications: {e.status} {e.reason}") from e
        keys = []
        for item in items:
            metadata = item.get("metadata") or {}
            keys.append(AppKey(namespace=metadata.get("namespace", "default"), name=metadata["name"]))
        return keys

    @staticmethod
    def _stored(key: AppKey, obj: Dict[str, Any]) -> StoredApplication:
        metadata = obj.get("metadata") or {}
        try:
            status = ApplicationStatus.from_manifest(obj.get("status"))
        except ValidationError as e:
            logger.warning(f"Discarding unreadable status of {key}: {e.error_count()} errors")
            status = ApplicationStatus()
        return StoredApplication(
            key=key,
            spec=obj.get("spec") or {},
            status=status,
            token=metadata.get("resourceVersion", ""),
            generation=metadata.get("generation", 0),
        )
