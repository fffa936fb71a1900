"""Tests for the ingress proxy."""

import json
import threading

import pytest
from kubernetes.client import (
    ApiException,
    V1Ingress,
    V1IngressList,
    V1ListMeta,
    V1ObjectMeta,
)

from constants import DATA_ANNOTATION, ROUTESPEC_ANNOTATION, TARGET_ANNOTATION
from fakes import FakeWatchFactory
from models import ReflectorPhase
from proxy import KubeIngressProxy, default_namespace, safe_name_for_routespec


def annotated_ingress(routespec: str, target: str, data: dict) -> V1Ingress:
    return V1Ingress(
        metadata=V1ObjectMeta(
            name=safe_name_for_routespec(routespec),
            namespace="hub",
            resource_version="1",
            annotations={
                ROUTESPEC_ANNOTATION: routespec,
                TARGET_ANNOTATION: target,
                DATA_ANNOTATION: json.dumps(data),
            },
        )
    )


class FakeNetworkingApi:
    """In-memory stand-in for NetworkingV1Api."""

    def __init__(self, ingresses: list[V1Ingress] | None = None) -> None:
        self.ingresses = {i.metadata.name: i for i in ingresses or []}
        self.list_calls: list[dict] = []
        self.replaced: list[str] = []
        self._lock = threading.Lock()

    def list_namespaced_ingress(self, **kwargs):
        if kwargs.get("watch"):
            return None
        with self._lock:
            self.list_calls.append(kwargs)
            return V1IngressList(
                items=list(self.ingresses.values()),
                metadata=V1ListMeta(resource_version="1"),
            )

    def create_namespaced_ingress(self, namespace, body):
        if body.metadata.name in self.ingresses:
            raise ApiException(status=409, reason="AlreadyExists")
        self.ingresses[body.metadata.name] = body

    def replace_namespaced_ingress(self, name, namespace, body):
        self.replaced.append(name)
        self.ingresses[name] = body

    def delete_namespaced_ingress(self, name, namespace):
        if name not in self.ingresses:
            raise ApiException(status=404, reason="NotFound")
        del self.ingresses[name]


def make_proxy(api, **kwargs) -> KubeIngressProxy:
    proxy = KubeIngressProxy(namespace="hub", networking_api=api, **kwargs)
    proxy.ingress_reflector._watch_factory = FakeWatchFactory()
    return proxy


class TestSafeName:
    """Tests for safe_name_for_routespec function."""

    def test_prefix_and_length(self):
        name = safe_name_for_routespec("/user/" + "a" * 100 + "/")

        assert name.startswith("jupyter-user-")
        assert len(name) <= 63

    def test_unique(self):
        assert safe_name_for_routespec("/user/a.b/") != safe_name_for_routespec("/user/a-b/")


class TestDefaultNamespace:
    """Tests for default_namespace function."""

    def test_reads_service_account_file(self, tmp_path, monkeypatch):
        ns_file = tmp_path / "namespace"
        ns_file.write_text("jupyterhub\n")
        monkeypatch.setattr("proxy.SERVICE_ACCOUNT_NAMESPACE_FILE", str(ns_file))

        assert default_namespace() == "jupyterhub"

    def test_falls_back_to_default(self, tmp_path, monkeypatch):
        monkeypatch.setattr("proxy.SERVICE_ACCOUNT_NAMESPACE_FILE", str(tmp_path / "missing"))

        assert default_namespace() == "default"


class TestRoutes:
    """Tests for adding, deleting and listing routes."""

    def test_add_route_creates_ingress(self):
        api = FakeNetworkingApi()
        proxy = make_proxy(api, extra_labels={"route": "{name}"})

        proxy.add_route("/user/alice/", "http://10.0.0.5:8888", {"user": "alice"})

        name = safe_name_for_routespec("/user/alice/")
        ingress = api.ingresses[name]
        assert ingress.metadata.labels["component"] == "singleuser-server"
        assert ingress.metadata.labels["route"] == name
        assert api.replaced == []

    def test_add_route_replaces_existing(self):
        api = FakeNetworkingApi()
        proxy = make_proxy(api)

        proxy.add_route("/user/alice/", "http://10.0.0.5:8888", {})
        proxy.add_route("/user/alice/", "http://10.0.0.6:8888", {})

        name = safe_name_for_routespec("/user/alice/")
        assert api.replaced == [name]
        assert api.ingresses[name].metadata.annotations[TARGET_ANNOTATION] == (
            "http://10.0.0.6:8888"
        )

    def test_add_route_propagates_other_errors(self):
        api = FakeNetworkingApi()
        api.create_namespaced_ingress = _raise(ApiException(status=403))
        proxy = make_proxy(api)

        with pytest.raises(ApiException):
            proxy.add_route("/user/alice/", "http://10.0.0.5:8888", {})

    def test_delete_route(self):
        api = FakeNetworkingApi([annotated_ingress("/user/alice/", "http://a", {})])
        proxy = make_proxy(api)

        proxy.delete_route("/user/alice/")

        assert api.ingresses == {}

    def test_delete_missing_route_is_not_an_error(self):
        proxy = make_proxy(FakeNetworkingApi())

        proxy.delete_route("/user/nobody/")

    def test_delete_route_propagates_other_errors(self):
        api = FakeNetworkingApi()
        api.delete_namespaced_ingress = _raise(ApiException(status=500))
        proxy = make_proxy(api)

        with pytest.raises(ApiException):
            proxy.delete_route("/user/alice/")

    def test_get_all_routes_reads_mirror(self):
        api = FakeNetworkingApi(
            [
                annotated_ingress("/user/alice/", "http://10.0.0.5:8888", {"user": "alice"}),
                V1Ingress(metadata=V1ObjectMeta(name="unrelated", namespace="hub")),
            ]
        )
        proxy = make_proxy(api)
        proxy.start()
        try:
            routes = proxy.get_all_routes()
            routes_again = proxy.get_all_routes()
        finally:
            assert proxy.stop(wait=True, timeout=5) is True

        assert routes == {
            "/user/alice/": {
                "routespec": "/user/alice/",
                "target": "http://10.0.0.5:8888",
                "data": {"user": "alice"},
            }
        }
        assert routes_again == routes
        assert len(api.list_calls) == 1
        assert api.list_calls[0]["namespace"] == "hub"
        assert api.list_calls[0]["label_selector"] == "app=jupyterhub,component=singleuser-server"
        assert proxy.ingress_reflector.phase == ReflectorPhase.STOPPED


def _raise(error):
    def method(*args, **kwargs):
        raise error

    return method
