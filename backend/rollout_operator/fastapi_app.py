# fastapi_app.py
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .accessor import parse_application
from .adapters import KubeJobBackend, KubeStatusStore, KubeWorkloadBackend
from .backends import JobBackend, StatusStore, WorkloadBackend
from .config import Settings, settings
from .errors import ApplicationNotFound, SpecInvalid, TransientError
from .factory import DEFAULT_COMPONENT, new_application_spec, to_manifest, with_component, without_component
from .kube_client import KubeClient
from .kube_types import AppKey, ComponentSpec, GlobalConfig, UpdateStrategy
from .reconciler import Reconciler
from .watcher import ApplicationWatcher
from .work_queue import ReconcileQueue

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------
@dataclass
class Operator:
    store: StatusStore
    reconciler: Reconciler
    queue: ReconcileQueue
    watcher: Optional[ApplicationWatcher] = None


def build_operator(
    store: StatusStore,
    workloads: WorkloadBackend,
    jobs: JobBackend,
    config: Optional[Settings] = None,
) -> Operator:
    config = config or settings
    reconciler = Reconciler(store, workloads, jobs, config=config)
    queue = ReconcileQueue(
        reconciler.reconcile,
        list_keys=store.list_keys,
        workers=config.MAX_CONCURRENT_RECONCILES,
        resync_period=config.RESYNC_PERIOD_SECS,
        error_backoff_base=config.ERROR_BACKOFF_BASE_SECS,
        error_backoff_max=config.ERROR_BACKOFF_MAX_SECS,
    )
    return Operator(store=store, reconciler=reconciler, queue=queue)


def _kube_operator(config: Settings) -> Operator:
    kube = KubeClient(
        namespace=config.K8S_NAMESPACE,
        in_cluster=config.K8S_IN_CLUSTER,
        context=config.K8S_CONTEXT,
        crd_group=config.CRD_GROUP,
        crd_version=config.CRD_VERSION,
        crd_plural=config.CRD_PLURAL,
    )
    operator = build_operator(
        KubeStatusStore(kube),
        KubeWorkloadBackend(kube),
        KubeJobBackend(kube, deadline_seconds=config.JOB_DEADLINE_SECS, ttl_seconds=config.JOB_TTL_SECS),
        config,
    )
    if config.WATCH_ENABLED:
        operator.watcher = ApplicationWatcher(
            kube, operator.queue.enqueue, timeout_seconds=config.WATCH_TIMEOUT_SECS
        )
    return operator


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ManifestRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Application name")
    namespace: str = Field(default="default", description="Target namespace")
    components: Dict[str, ComponentSpec] = Field(
        default_factory=dict, description="Components; a single default component when empty"
    )
    update_strategy: Optional[UpdateStrategy] = Field(default=None, alias="updateStrategy")
    global_config: Optional[GlobalConfig] = Field(default=None, alias="globalConfig")

    class Config:
        populate_by_name = True


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _operator(request: Request) -> Operator:
    operator = request.app.state.operator
    if operator is None:
        raise HTTPException(503, "Kubernetes client not available")
    return operator


def _plan_body(plan) -> Dict[str, Any]:
    return {
        "steps": [
            {
                "component": step.name,
                "action": step.action.value,
                "version": step.component.version,
                "maxUnavailable": step.bounds.max_unavailable,
                "maxSurge": step.bounds.max_surge,
                "recreate": step.bounds.recreate,
            }
            for step in plan.steps
        ],
        "waiting": plan.waiting,
    }


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "healthy"}


@router.get("/api/health")
async def api_health():
    return {"status": "healthy"}


@router.get("/api/applications")
async def api_applications(request: Request) -> List[Dict[str, str]]:
    """List the applications known to the operator."""
    operator = _operator(request)
    try:
        keys = await operator.store.list_keys()
    except TransientError as e:
        raise HTTPException(503, f"Failed to list applications: {e}")
    return [{"namespace": key.namespace, "name": key.name} for key in sorted(keys, key=str)]


@router.get("/api/applications/{namespace}/{name}/status")
async def api_application_status(namespace: str, name: str, request: Request):
    operator = _operator(request)
    key = AppKey(namespace=namespace, name=name)
    try:
        stored = await operator.store.get(key)
    except ApplicationNotFound:
        raise HTTPException(404, f"Application {key} not found")
    except TransientError as e:
        raise HTTPException(503, f"Failed to read application {key}: {e}")
    return {"application": str(key), "generation": stored.generation, "status": stored.status.to_manifest()}


@router.get("/api/applications/{namespace}/{name}/plan")
async def api_application_plan(namespace: str, name: str, request: Request):
    """Show what the next reconciliation would do, without doing it."""
    operator = _operator(request)
    key = AppKey(namespace=namespace, name=name)
    try:
        plan = await operator.reconciler.preview(key)
    except ApplicationNotFound:
        raise HTTPException(404, f"Application {key} not found")
    except SpecInvalid as e:
        raise HTTPException(422, f"Invalid spec: {e}")
    except TransientError as e:
        raise HTTPException(503, f"Failed to plan {key}: {e}")
    return {"application": str(key), **_plan_body(plan)}


@router.post("/api/applications/{namespace}/{name}/reconcile", status_code=202)
async def api_reconcile(namespace: str, name: str, request: Request, wait: bool = Query(False)):
    """
    Trigger a reconciliation.

    With ``wait=true`` the pass runs inline and its result is returned;
    otherwise the application is queued for the workers.
    """
    operator = _operator(request)
    key = AppKey(namespace=namespace, name=name)
    if not wait:
        operator.queue.enqueue(key)
        logger.info(f"📥 Reconcile of {key} requested")
        return {"application": str(key), "queued": True}

    try:
        result = await operator.reconciler.reconcile(key)
    except TransientError as e:
        raise HTTPException(503, f"Reconcile of {key} failed: {e}")
    if result.requeue_after is not None:
        operator.queue.enqueue(key, result.requeue_after)
    return {
        "application": str(key),
        "queued": False,
        "requeueAfter": result.requeue_after,
        "status": result.status.to_manifest() if result.status else None,
    }


@router.post("/api/manifests")
async def api_manifests(body: ManifestRequest):
    """Render an application manifest, filling in defaults for anything omitted."""
    options = []
    if body.components:
        options.append(without_component(DEFAULT_COMPONENT))
        options.extend(
            with_component(component, **spec.model_dump(exclude_unset=True))
            for component, spec in body.components.items()
        )
    spec = new_application_spec(*options)
    if body.update_strategy is not None:
        spec.update_strategy = body.update_strategy
    if body.global_config is not None:
        spec.global_config = body.global_config

    key = AppKey(namespace=body.namespace, name=body.name)
    try:
        parse_application(key, spec.model_dump(by_alias=True))
    except SpecInvalid as e:
        raise HTTPException(422, f"Invalid spec: {e}")
    return to_manifest(body.name, body.namespace, spec, api_version=f"{settings.CRD_GROUP}/{settings.CRD_VERSION}")


# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
def create_app(
    store: Optional[StatusStore] = None,
    workloads: Optional[WorkloadBackend] = None,
    jobs: Optional[JobBackend] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the service.

    When no backends are passed the Kubernetes ones are created at startup;
    a cluster that cannot be reached leaves the API up with reconciliation off.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.operator is None:
            try:
                app.state.operator = _kube_operator(config)
            except Exception as e:
                logger.warning(f"⚠️ Kubernetes client initialization failed: {e}. Reconciliation is disabled.")
        operator = app.state.operator
        if operator is not None:
            await operator.queue.start()
            if operator.watcher is not None:
                await operator.watcher.start()
        try:
            yield
        finally:
            if operator is not None:
                if operator.watcher is not None:
                    await operator.watcher.stop()
                await operator.queue.stop()

    app = FastAPI(title="Rollout Operator", version="1.0.0", lifespan=lifespan)
    app.state.operator = build_operator(store, workloads, jobs, config) if store is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)
