"""Shared Kubernetes API clients - thread-safe singleton, one instance per API class."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from models import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ClientState:
    """Thread-safe container for Kubernetes configuration and API clients.

    Configuration must be loaded once with `load_config()`; afterwards
    `shared_client()` hands out a single cached instance per API class
    (e.g. 'CoreV1Api', 'NetworkingV1Api').
    """

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _clients: dict[str, Any] = field(default_factory=dict, repr=False)
    _configured: bool = field(default=False, repr=False)

    @property
    def configured(self) -> bool:
        return self._configured

    def load_config(
        self,
        host: str | None = None,
        ssl_ca_cert: str | None = None,
        verify_ssl: bool = True,
    ) -> None:
        """Load in-cluster configuration, falling back to kubeconfig.

        Args:
            host: Override the API server URL
            ssl_ca_cert: Path to a CA bundle to trust for the API server
            verify_ssl: Set to False to skip TLS verification
        """
        with self._lock:
            try:
                k8s_config.load_incluster_config()
                logger.debug("Loaded in-cluster Kubernetes configuration")
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
                logger.debug("Loaded Kubernetes configuration from kubeconfig")

            if host or ssl_ca_cert or not verify_ssl:
                configuration = k8s_client.Configuration.get_default_copy()
                if host:
                    configuration.host = host
                if ssl_ca_cert:
                    configuration.ssl_ca_cert = ssl_ca_cert
                configuration.verify_ssl = verify_ssl
                k8s_client.Configuration.set_default(configuration)

            # clients built from an older configuration must not be reused
            self._clients.clear()
            self._configured = True

    def shared_client(self, client_type: str) -> Any:
        """Get or create the shared API client of the given class name."""
        with self._lock:
            if not self._configured:
                raise ConfigurationError(
                    "Kubernetes config not loaded. Call load_config() first."
                )
            if client_type not in self._clients:
                client_class = getattr(k8s_client, client_type, None)
                if not isinstance(client_class, type) or not client_type.endswith("Api"):
                    raise ConfigurationError(
                        f"Invalid Kubernetes client type: {client_type}"
                    )
                self._clients[client_type] = client_class()
            return self._clients[client_type]

    def reset(self) -> None:
        """Forget cached clients and configuration."""
        with self._lock:
            self._clients.clear()
            self._configured = False


# Global client state singleton
state = ClientState()


def load_config(
    host: str | None = None,
    ssl_ca_cert: str | None = None,
    verify_ssl: bool = True,
) -> None:
    """Load Kubernetes configuration into the shared client state."""
    state.load_config(host=host, ssl_ca_cert=ssl_ca_cert, verify_ssl=verify_ssl)


def shared_client(client_type: str) -> Any:
    """Get the shared API client of the given class name."""
    return state.shared_client(client_type)
