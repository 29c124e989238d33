"""
Builders for application manifests with sensible defaults.

Used by the manifest endpoint and by tests that need a valid application
quickly::

    manifest = new_application(
        "shop", "prod",
        with_component("api", version="2.0.0", image="shop/api:2.0.0", replicas=3),
    )
"""
from typing import Any, Callable, Dict, Optional

from .kube_types import (
    ApplicationSpec,
    ComponentSpec,
    GlobalConfig,
    IntOrPercent,
    ResourceRequirements,
    StrategyType,
    UpdateStrategy,
)

DEFAULT_COMPONENT = "default"
DEFAULT_VERSION = "1.0.0"
DEFAULT_IMAGE = "default-image:latest"
DEFAULT_REPLICAS = 1
DEFAULT_CPU_LIMIT = "100m"
DEFAULT_MEMORY_LIMIT = "128Mi"
DEFAULT_CPU_REQUEST = "50m"
DEFAULT_MEMORY_REQUEST = "64Mi"
DEFAULT_MAX_UNAVAILABLE = "25%"
DEFAULT_MAX_SURGE = "25%"
DEFAULT_REGISTRY = "default-registry.example.com"
DEFAULT_IMAGE_PULL_SECRET = "default-pull-secret"

ApplicationOption = Callable[[ApplicationSpec], None]


def default_resources() -> ResourceRequirements:
    return ResourceRequirements(
        limits={"cpu": DEFAULT_CPU_LIMIT, "memory": DEFAULT_MEMORY_LIMIT},
        requests={"cpu": DEFAULT_CPU_REQUEST, "memory": DEFAULT_MEMORY_REQUEST},
    )


def default_component(**overrides) -> ComponentSpec:
    values = {
        "version": DEFAULT_VERSION,
        "image": DEFAULT_IMAGE,
        "replicas": DEFAULT_REPLICAS,
        "resources": default_resources(),
    }
    values.update(overrides)
    return ComponentSpec(**values)


def default_spec() -> ApplicationSpec:
    return ApplicationSpec(
        components={DEFAULT_COMPONENT: default_component()},
        update_strategy=UpdateStrategy(
            type=StrategyType.ROLLING_UPDATE,
            max_unavailable=DEFAULT_MAX_UNAVAILABLE,
            max_surge=DEFAULT_MAX_SURGE,
        ),
        global_config=GlobalConfig(registry=DEFAULT_REGISTRY, image_pull_secret=DEFAULT_IMAGE_PULL_SECRET),
    )


def with_component(name: str, **fields) -> ApplicationOption:
    """Add or replace a component; unspecified fields take the defaults."""
    def apply(spec: ApplicationSpec) -> None:
        spec.components[name] = default_component(**fields)
    return apply


def without_component(name: str) -> ApplicationOption:
    def apply(spec: ApplicationSpec) -> None:
        spec.components.pop(name, None)
    return apply


def with_update_strategy(
    type: StrategyType = StrategyType.ROLLING_UPDATE,
    max_unavailable: IntOrPercent = DEFAULT_MAX_UNAVAILABLE,
    max_surge: IntOrPercent = DEFAULT_MAX_SURGE,
) -> ApplicationOption:
    def apply(spec: ApplicationSpec) -> None:
        spec.update_strategy = UpdateStrategy(type=type, max_unavailable=max_unavailable, max_surge=max_surge)
    return apply


def with_global_config(**fields) -> ApplicationOption:
    def apply(spec: ApplicationSpec) -> None:
        spec.global_config = spec.global_config.model_copy(update=fields)
    return apply


def new_application_spec(*options: ApplicationOption) -> ApplicationSpec:
    spec = default_spec()
    for option in options:
        option(spec)
    return spec


def to_manifest(
    name: str,
    namespace: str,
    spec: ApplicationSpec,
    api_version: str = "rollout.example.com/v1alpha1",
    status: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Render the custom resource body for an application."""
    return {
        "apiVersion": api_version,
        "kind": "Application",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec.model_dump(mode="json", by_alias=True, exclude_none=True),
        "status": status if status is not None else {"componentStatus": {}, "conditions": []},
    }


def new_application(name: str, namespace: str = "default", *options: ApplicationOption) -> Dict[str, Any]:
    """
    Build an application manifest populated with defaults.

    Args:
        name: Application name
        namespace: Namespace the application lives in
        options: Adjustments applied in order to the default spec

    Returns:
        Manifest dict with one ``default`` component unless the options change it
    """
    return to_manifest(name, namespace, new_application_spec(*options))
