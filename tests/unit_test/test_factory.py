"""
Unit tests for application manifest builders.
"""

from rollout_operator.accessor import parse_application
from rollout_operator.factory import (
    DEFAULT_COMPONENT,
    new_application,
    with_component,
    with_global_config,
    with_update_strategy,
    without_component,
)
from rollout_operator.kube_types import AppKey, StrategyType


class TestNewApplication:
    def test_defaults(self):
        manifest = new_application("shop", "prod")

        assert manifest["metadata"] == {"name": "shop", "namespace": "prod"}
        spec = manifest["spec"]
        assert list(spec["components"]) == [DEFAULT_COMPONENT]
        component = spec["components"][DEFAULT_COMPONENT]
        assert component["image"] == "default-image:latest"
        assert component["replicas"] == 1
        assert component["resources"]["requests"] == {"cpu": "50m", "memory": "64Mi"}
        assert spec["updateStrategy"] == {"type": "RollingUpdate", "maxUnavailable": "25%", "maxSurge": "25%"}
        assert spec["globalConfig"]["imagePullSecret"] == "default-pull-secret"
        assert manifest["status"] == {"componentStatus": {}, "conditions": []}

    def test_options_apply_in_order(self):
        manifest = new_application(
            "shop",
            "prod",
            without_component(DEFAULT_COMPONENT),
            with_component("api", version="2.0.0", image="shop/api", replicas=3),
            with_update_strategy(type=StrategyType.RECREATE),
            with_global_config(registry="registry.example.com"),
        )
        spec = manifest["spec"]

        assert list(spec["components"]) == ["api"]
        assert spec["components"]["api"]["replicas"] == 3
        assert spec["updateStrategy"]["type"] == "Recreate"
        assert spec["globalConfig"]["registry"] == "registry.example.com"
        assert spec["globalConfig"]["imagePullSecret"] == "default-pull-secret"

    def test_default_manifest_is_valid(self):
        manifest = new_application("shop")
        application = parse_application(AppKey("default", "shop"), manifest["spec"], 1)
        assert [name for name, _ in application.ordered_components()] == [DEFAULT_COMPONENT]
