"""Builders for the Kubernetes objects created on behalf of a user server.

Each function returns a kubernetes client model ready to be passed to the
matching create/replace API call. No API calls are made here.
"""

import base64
import json
import re
from typing import Any
from urllib.parse import urlparse

from kubernetes.client import (
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1IngressTLS,
    V1LabelSelector,
    V1Namespace,
    V1ObjectMeta,
    V1OwnerReference,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimSpec,
    V1Pod,
    V1PodSpec,
    V1Secret,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
    V1VolumeResourceRequirements,
)

from constants import DATA_ANNOTATION, ROUTESPEC_ANNOTATION, TARGET_ANNOTATION
from utils import get_k8s_model, host_matching, update_k8s_model

SERVICE_DNS_PATTERN = re.compile(
    r"(?P<service>[^.]+)\.?(?P<namespace>[^.]+)?(?P<rest>\.svc(\.cluster(\.local)?)?)?"
)

_ENV_VAR_REFERENCE = re.compile(r"\$\(([^)]+)\)")


def make_namespace(
    name: str,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1Namespace:
    return V1Namespace(
        api_version="v1",
        kind="Namespace",
        metadata=V1ObjectMeta(
            name=name,
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
        ),
    )


def make_owner_reference(name: str, uid: str) -> V1OwnerReference:
    """Owner reference to a pod, so dependents are deleted along with it."""
    return V1OwnerReference(
        api_version="v1",
        kind="Pod",
        name=name,
        uid=uid,
        block_owner_deletion=True,
        controller=False,
    )


def make_service(
    name: str,
    port: int,
    selector: dict[str, str],
    owner_references: list[V1OwnerReference] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1Service:
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=name,
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
            owner_references=owner_references or [],
        ),
        spec=V1ServiceSpec(
            type="ClusterIP",
            ports=[V1ServicePort(name="http", port=port, target_port=port)],
            selector=selector,
        ),
    )


def _read_file(path: str) -> str:
    with open(path, encoding="utf8") as f:
        return f.read()


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf8")).decode("ascii")


def make_secret(
    name: str,
    username: str,
    cert_paths: dict[str, str],
    hub_ca_path: str,
    owner_references: list[V1OwnerReference] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1Secret:
    """Secret carrying a user server's TLS key, certificate and CA bundle.

    Args:
        name: Secret name
        username: User the certificates were issued for
        cert_paths: Paths keyed by 'keyfile', 'certfile' and 'cafile'
        hub_ca_path: CA of the hub, appended to the trust bundle
        owner_references: Owners of the secret
        labels: Extra labels
        annotations: Extra annotations
    """
    ssl_key = _read_file(cert_paths["keyfile"])
    ssl_crt = _read_file(cert_paths["certfile"])
    ca_bundle = _read_file(cert_paths["cafile"]) + "\n" + _read_file(hub_ca_path)

    annotations = dict(annotations or {})
    annotations.setdefault("hub.jupyter.org/username", username)

    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(
            name=name,
            labels=dict(labels or {}),
            annotations=annotations,
            owner_references=owner_references or [],
        ),
        data={
            "ssl.key": _b64(ssl_key),
            "ssl.crt": _b64(ssl_crt),
            "notebooks-ca_trust.crt": _b64(ca_bundle),
        },
    )


def make_pvc(
    name: str,
    storage_class: str | None,
    access_modes: list[str],
    selector: dict[str, Any] | None,
    storage: str,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1PersistentVolumeClaim:
    annotations = dict(annotations or {})
    spec = V1PersistentVolumeClaimSpec(
        access_modes=access_modes,
        resources=V1VolumeResourceRequirements(requests={"storage": storage}),
    )
    if storage_class is not None:
        annotations["volume.beta.kubernetes.io/storage-class"] = storage_class
        spec.storage_class_name = storage_class
    if selector:
        spec.selector = get_k8s_model(V1LabelSelector, selector)

    return V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=V1ObjectMeta(
            name=name,
            labels=dict(labels or {}),
            annotations=annotations,
        ),
        spec=spec,
    )


def _get_env_var_deps(env_var: V1EnvVar) -> set[str]:
    """Names of other variables referenced as $(NAME) in the value."""
    if not env_var.value:
        return set()
    return {
        dep for dep in _ENV_VAR_REFERENCE.findall(env_var.value) if dep != env_var.name
    }


def _sort_env_vars(env_vars: list[V1EnvVar]) -> list[V1EnvVar]:
    """Order variables so each one comes after those it references.

    Kubernetes only expands $(NAME) for variables defined earlier in the
    list. Relative order is kept otherwise; reference cycles are left as-is.
    """
    by_name = {env_var.name: env_var for env_var in env_vars}
    ordered: list[V1EnvVar] = []
    visited: set[str] = set()

    def visit(env_var: V1EnvVar) -> None:
        if env_var.name in visited:
            return
        visited.add(env_var.name)
        for dep in sorted(_get_env_var_deps(env_var)):
            if dep in by_name:
                visit(by_name[dep])
        ordered.append(env_var)

    for env_var in env_vars:
        visit(env_var)
    return ordered


def make_pod(
    name: str,
    image: str,
    cmd: list[str],
    port: int,
    env: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    volume_mounts: list[Any] | None = None,
    volumes: list[Any] | None = None,
    service_account: str | None = None,
    extra_container_config: dict[str, Any] | None = None,
    extra_pod_config: dict[str, Any] | None = None,
) -> V1Pod:
    """Pod running a single user server container.

    `extra_container_config` and `extra_pod_config` are applied last and
    may use camelCase or snake_case field names.
    """
    env_vars = _sort_env_vars(
        [V1EnvVar(name=key, value=value) for key, value in (env or {}).items()]
    )
    container = V1Container(
        name="notebook",
        image=image,
        args=cmd,
        ports=[V1ContainerPort(name="notebook-port", container_port=port)],
        env=env_vars,
        volume_mounts=volume_mounts or [],
    )
    if extra_container_config:
        update_k8s_model(container, extra_container_config)

    pod_spec = V1PodSpec(
        containers=[container],
        volumes=volumes or [],
        restart_policy="OnFailure",
    )
    if service_account:
        pod_spec.service_account_name = service_account
    if extra_pod_config:
        update_k8s_model(pod_spec, extra_pod_config)

    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=V1ObjectMeta(
            name=name,
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
        ),
        spec=pod_spec,
    )


def split_routespec(routespec: str) -> tuple[str | None, str]:
    """Split a routespec into host and path.

    Example: 'hub.example.com/user/a/' -> ('hub.example.com', '/user/a/'),
    '/user/a/' -> (None, '/user/a/')
    """
    if routespec.startswith("/"):
        return None, routespec
    host, _, path = routespec.partition("/")
    return host, "/" + path


def make_ingress(
    name: str,
    routespec: str,
    target: str,
    data: dict[str, Any],
    namespace: str,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    ingress_class_name: str = "",
    ingress_specifications: list[dict[str, str]] | None = None,
    reuse_existing_services: bool = False,
) -> V1Ingress:
    """Ingress routing routespec to target.

    The backend service is `name` unless `reuse_existing_services` is set
    and target already points at a service in `namespace`, in which case
    that service is routed to directly.

    Args:
        ingress_specifications: Dicts with 'host' and optional 'tlsSecret';
            a TLS section is added for every secret whose host matches the
            route's host
    """
    host, path = split_routespec(routespec)
    parsed_target = urlparse(target)
    port = parsed_target.port or 80

    service_name = name
    target_host = parsed_target.hostname or ""
    service_match = SERVICE_DNS_PATTERN.fullmatch(target_host)
    if reuse_existing_services and service_match:
        target_namespace = service_match.group("namespace")
        if not target_namespace or target_namespace == namespace:
            service_name = service_match.group("service")

    all_annotations = {
        DATA_ANNOTATION: json.dumps(data),
        ROUTESPEC_ANNOTATION: routespec,
        TARGET_ANNOTATION: target,
    }
    all_annotations.update(annotations or {})

    rule = V1IngressRule(
        host=host,
        http=V1HTTPIngressRuleValue(
            paths=[
                V1HTTPIngressPath(
                    path=path,
                    path_type="Prefix",
                    backend=V1IngressBackend(
                        service=V1IngressServiceBackend(
                            name=service_name,
                            port=V1ServiceBackendPort(number=port),
                        ),
                    ),
                )
            ]
        ),
    )

    tls = [
        V1IngressTLS(hosts=[spec["host"]], secret_name=spec["tlsSecret"])
        for spec in ingress_specifications or []
        if spec.get("tlsSecret")
        and spec.get("host")
        and (host is None or host_matching(host, spec["host"]))
    ]

    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=dict(labels or {}),
            annotations=all_annotations,
        ),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class_name or None,
            rules=[rule],
            tls=tls or None,
        ),
    )
