"""Route user servers through Kubernetes ingresses.

Routes are stored as ingress objects annotated with their routespec,
target and data. Route lookups are served from an ingress reflector, so
listing routes never calls the API server.
"""

import json
import logging
from typing import Any

from kubernetes.client import ApiException, NetworkingV1Api

from client import shared_client
from constants import (
    DATA_ANNOTATION,
    PROXY_LABELS,
    ROUTESPEC_ANNOTATION,
    SERVICE_ACCOUNT_NAMESPACE_FILE,
    TARGET_ANNOTATION,
)
from models import ReflectorConfig, ReflectorScope
from objects import make_ingress
from reflector import FailureCallback, ResourceReflector
from slugs import strip_and_hash
from utils import recursive_format

logger = logging.getLogger(__name__)


def default_namespace() -> str:
    """Namespace of the running pod's service account, else 'default'."""
    try:
        with open(SERVICE_ACCOUNT_NAMESPACE_FILE, encoding="utf8") as f:
            return f.read().strip()
    except OSError:
        return "default"


def safe_name_for_routespec(routespec: str) -> str:
    """Object name for a routespec; unique per routespec, at most 63 chars.

    Example: '/user/alice/' -> 'jupyter-user-alice---<8 hex chars>'
    """
    return "jupyter-" + strip_and_hash(routespec, max_length=55)


class KubeIngressProxy:
    """Manage one ingress per route in a single namespace.

    Args:
        namespace: Namespace holding the ingresses; defaults to the
            service-account namespace
        networking_api: API client; defaults to the shared NetworkingV1Api
        extra_labels: Labels added to every ingress; may use '{routespec}'
            and '{name}' placeholders
        extra_annotations: Annotations added to every ingress, same
            placeholders as extra_labels
        ingress_class_name: ingressClassName of created ingresses
        ingress_specifications: Host/TLS secret pairs, see `make_ingress`
        reuse_existing_services: Route straight to target services
        reflector_config: Timeouts and backoff for the ingress reflector
        on_failure: Called when the ingress mirror can no longer be trusted
    """

    def __init__(
        self,
        namespace: str | None = None,
        networking_api: NetworkingV1Api | None = None,
        extra_labels: dict[str, str] | None = None,
        extra_annotations: dict[str, str] | None = None,
        ingress_class_name: str = "",
        ingress_specifications: list[dict[str, str]] | None = None,
        reuse_existing_services: bool = False,
        reflector_config: ReflectorConfig | None = None,
        on_failure: FailureCallback | None = None,
    ) -> None:
        self.namespace = namespace or default_namespace()
        self.networking_api = networking_api or shared_client("NetworkingV1Api")
        self.extra_labels = dict(extra_labels or {})
        self.extra_annotations = dict(extra_annotations or {})
        self.ingress_class_name = ingress_class_name
        self.ingress_specifications = list(ingress_specifications or [])
        self.reuse_existing_services = reuse_existing_services

        self.labels = {**PROXY_LABELS, **self.extra_labels}
        self.ingress_reflector = ResourceReflector(
            "ingresses",
            self.networking_api,
            "list_namespaced_ingress",
            ReflectorScope.namespaced(self.namespace),
            labels=PROXY_LABELS,
            config=reflector_config,
            on_failure=on_failure,
        )

    def start(self) -> None:
        """Populate the route mirror and keep it in sync."""
        self.ingress_reflector.start()

    def stop(self, wait: bool = False, timeout: float | None = None) -> bool:
        return self.ingress_reflector.stop(wait=wait, timeout=timeout)

    def add_route(self, routespec: str, target: str, data: dict[str, Any]) -> None:
        """Create the ingress for routespec, replacing any existing one."""
        name = safe_name_for_routespec(routespec)
        values = {"routespec": routespec, "name": name}
        ingress = make_ingress(
            name=name,
            routespec=routespec,
            target=target,
            data=data,
            namespace=self.namespace,
            labels=recursive_format(self.labels, **values),
            annotations=recursive_format(self.extra_annotations, **values),
            ingress_class_name=self.ingress_class_name,
            ingress_specifications=self.ingress_specifications,
            reuse_existing_services=self.reuse_existing_services,
        )

        try:
            self.networking_api.create_namespaced_ingress(self.namespace, ingress)
            logger.info("Created ingress %s for %s", name, routespec)
        except ApiException as e:
            if e.status != 409:
                raise
            self.networking_api.replace_namespaced_ingress(name, self.namespace, ingress)
            logger.info("Updated existing ingress %s for %s", name, routespec)

    def delete_route(self, routespec: str) -> None:
        """Delete the ingress for routespec; missing ingresses are not an error."""
        name = safe_name_for_routespec(routespec)
        try:
            self.networking_api.delete_namespaced_ingress(name, self.namespace)
            logger.info("Deleted ingress %s for %s", name, routespec)
        except ApiException as e:
            if e.status != 404:
                raise
            logger.warning("Ingress %s not found", name)

    def get_all_routes(self) -> dict[str, dict[str, Any]]:
        """Return routes known to the ingress mirror, keyed by routespec."""
        routes: dict[str, dict[str, Any]] = {}
        for ingress in self.ingress_reflector.resources.values():
            annotations = _annotations(ingress)
            routespec = annotations.get(ROUTESPEC_ANNOTATION)
            if not routespec:
                continue
            routes[routespec] = {
                "routespec": routespec,
                "target": annotations.get(TARGET_ANNOTATION),
                "data": json.loads(annotations.get(DATA_ANNOTATION) or "{}"),
            }
        return routes


def _annotations(ingress: Any) -> dict[str, str]:
    if isinstance(ingress, dict):
        return (ingress.get("metadata") or {}).get("annotations") or {}
    metadata = getattr(ingress, "metadata", None)
    return (getattr(metadata, "annotations", None) or {}) if metadata else {}
