"""
Kubernetes client for deployment, job and application resource operations.
"""
import logging
from typing import Any, Dict, Iterator, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)


class KubeClient:
    """Thin synchronous wrapper over the Kubernetes API groups the operator uses."""

    def __init__(
        self,
        namespace: Optional[str] = None,
        in_cluster: bool = True,
        context: Optional[str] = None,
        crd_group: str = "rollout.example.com",
        crd_version: str = "v1alpha1",
        crd_plural: str = "applications",
    ):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Namespace to list applications in (all namespaces when None)
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
            crd_group: API group of the application resource
            crd_version: API version of the application resource
            crd_plural: Plural name of the application resource
        """
        self.namespace = namespace
        self.in_cluster = in_cluster
        self.crd_group = crd_group
        self.crd_version = crd_version
        self.crd_plural = crd_plural

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.api_client = client.ApiClient()
            self.apps_v1 = client.AppsV1Api(self.api_client)
            self.batch_v1 = client.BatchV1Api(self.api_client)
            self.custom_objects = client.CustomObjectsApi(self.api_client)
            logger.info(f"✅ Kubernetes client initialized for namespace: {namespace or 'all'}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    @property
    def api_version(self) -> str:
        return f"{self.crd_group}/{self.crd_version}"

    # -------------------------------------------------------------------------
    # Deployments
    # -------------------------------------------------------------------------
    def read_deployment(self, namespace: str, name: str) -> client.V1Deployment:
        return self.apps_v1.read_namespaced_deployment(name=name, namespace=namespace)

    def create_deployment(self, namespace: str, body: Dict[str, Any]) -> client.V1Deployment:
        try:
            deployment = self.apps_v1.create_namespaced_deployment(namespace=namespace, body=body)
            logger.info(f"✅ Created deployment {namespace}/{body['metadata']['name']}")
            return deployment
        except ApiException as e:
            logger.error(f"Failed to create deployment {namespace}/{body['metadata']['name']}: {e.status} {e.reason}")
            raise

    def patch_deployment(self, namespace: str, name: str, body: Dict[str, Any]) -> client.V1Deployment:
        try:
            return self.apps_v1.patch_namespaced_deployment(name=name, namespace=namespace, body=body)
        except ApiException as e:
            logger.error(f"Failed to patch deployment {namespace}/{name}: {e.status} {e.reason}")
            raise

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------
    def read_job(self, namespace: str, name: str) -> client.V1Job:
        return self.batch_v1.read_namespaced_job(name=name, namespace=namespace)

    def create_job(self, namespace: str, body: Dict[str, Any]) -> client.V1Job:
        job = self.batch_v1.create_namespaced_job(namespace=namespace, body=body)
        logger.info(f"✅ Created job {namespace}/{body['metadata']['name']}")
        return job

    # -------------------------------------------------------------------------
    # Application resources
    # -------------------------------------------------------------------------
    def get_application(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.custom_objects.get_namespaced_custom_object(
            group=self.crd_group,
            version=self.crd_version,
            namespace=namespace,
            plural=self.crd_plural,
            name=name,
        )

    def list_applications(self) -> List[Dict[str, Any]]:
        """
        List application resources in the configured namespace, or cluster-wide.

        Returns:
            Raw application objects
        """
        try:
            if self.namespace:
                result = self.custom_objects.list_namespaced_custom_object(
                    group=self.crd_group,
                    version=self.crd_version,
                    namespace=self.namespace,
                    plural=self.crd_plural,
                )
            else:
                result = self.custom_objects.list_cluster_custom_object(
                    group=self.crd_group,
                    version=self.crd_version,
                    plural=self.crd_plural,
                )
            items = result.get("items", [])
            logger.debug(f"Retrieved {len(items)} applications")
            return items
        except ApiException as e:
            logger.error(f"Failed to list applications: {e.status} {e.reason}")
            raise

    def watch_applications(
        self, watcher: watch.Watch, resource_version: Optional[str] = None, timeout_seconds: int = 300
    ) -> Iterator[Dict[str, Any]]:
        """
        Stream application events until the server closes the watch.

        Args:
            watcher: Watch to stream with; calling its ``stop()`` ends the stream
            resource_version: Resume after this version (a full replay when None)
            timeout_seconds: Server-side timeout of the request

        Returns:
            Iterator of ``{"type": ..., "object": ...}`` events
        """
        kwargs = dict(
            group=self.crd_group,
            version=self.crd_version,
            plural=self.crd_plural,
            timeout_seconds=timeout_seconds,
        )
        if resource_version:
            kwargs["resource_version"] = resource_version
        if self.namespace:
            return watcher.stream(
                self.custom_objects.list_namespaced_custom_object, namespace=self.namespace, **kwargs
            )
        return watcher.stream(self.custom_objects.list_cluster_custom_object, **kwargs)

    def replace_application_status(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource; ``body.metadata.resourceVersion`` makes the write conditional."""
        return self.custom_objects.replace_namespaced_custom_object_status(
            group=self.crd_group,
            version=self.crd_version,
            namespace=namespace,
            plural=self.crd_plural,
            name=name,
            body=body,
        )

