"""Domain models for the resource reflector.

This module defines typed data structures for reflector concepts:
lifecycle phases, watch scopes, mirror entries, configuration and the
exception hierarchy.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any


# =============================================================================
# Enums for constrained values
# =============================================================================


class ReflectorPhase(Enum):
    """Reconciliation loop phase."""

    STARTING = "Starting"
    SYNCING = "Syncing"
    WATCHING = "Watching"
    BACKOFF = "Backoff"
    STOPPED = "Stopped"
    FAILED = "Failed"


class ScopeKind(Enum):
    """Whether a reflector lists a single namespace or the whole cluster."""

    NAMESPACED = "Namespaced"
    CLUSTER = "Cluster"


class EventType(Enum):
    """Kubernetes watch event type."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


# =============================================================================
# Dataclasses
# =============================================================================


@dataclass(frozen=True)
class ReflectorScope:
    """Listing scope of a reflector.

    Use the `namespaced` and `cluster` constructors rather than building
    instances directly.
    """

    kind: ScopeKind
    namespace: str | None = None

    def __post_init__(self) -> None:
        if self.kind is ScopeKind.NAMESPACED and not self.namespace:
            raise ConfigurationError("a namespaced scope requires a namespace")
        if self.kind is ScopeKind.CLUSTER and self.namespace:
            raise ConfigurationError("a cluster scope cannot carry a namespace")

    @classmethod
    def namespaced(cls, namespace: str) -> "ReflectorScope":
        return cls(kind=ScopeKind.NAMESPACED, namespace=namespace)

    @classmethod
    def cluster(cls) -> "ReflectorScope":
        return cls(kind=ScopeKind.CLUSTER)

    @property
    def is_namespaced(self) -> bool:
        return self.kind is ScopeKind.NAMESPACED

    def __str__(self) -> str:
        if self.is_namespaced:
            return f"namespace {self.namespace}"
        return "all namespaces"


@dataclass(frozen=True)
class MirrorEntry:
    """One object held in the mirror."""

    key: str
    version: str | None
    payload: Any


@dataclass(frozen=True)
class ReflectorConfig:
    """Timeouts and backoff policy for a reflector.

    All values are in seconds.
    """

    request_timeout: float = 60.0
    idle_timeout: int = 10
    initial_backoff: float = 0.1
    backoff_ceiling: float = 30.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.idle_timeout <= 0:
            raise ConfigurationError("idle_timeout must be positive")
        if self.initial_backoff <= 0:
            raise ConfigurationError("initial_backoff must be positive")
        if self.backoff_ceiling < self.initial_backoff:
            raise ConfigurationError(
                "backoff_ceiling must not be lower than initial_backoff"
            )
        if self.backoff_factor <= 1:
            raise ConfigurationError("backoff_factor must be greater than 1")

    @classmethod
    def from_env(cls) -> "ReflectorConfig":
        """Create config from environment variables.

        Configuration via environment variables:
            REFLECTOR_REQUEST_TIMEOUT_SECONDS: List request timeout (default: 60)
            REFLECTOR_IDLE_TIMEOUT_SECONDS: Server-side watch timeout (default: 10)
            REFLECTOR_INITIAL_BACKOFF_SECONDS: First retry delay (default: 0.1)
            REFLECTOR_BACKOFF_CEILING_SECONDS: Give up past this delay (default: 30)
        """
        try:
            return cls(
                request_timeout=float(
                    os.environ.get("REFLECTOR_REQUEST_TIMEOUT_SECONDS", "60")
                ),
                idle_timeout=int(os.environ.get("REFLECTOR_IDLE_TIMEOUT_SECONDS", "10")),
                initial_backoff=float(
                    os.environ.get("REFLECTOR_INITIAL_BACKOFF_SECONDS", "0.1")
                ),
                backoff_ceiling=float(
                    os.environ.get("REFLECTOR_BACKOFF_CEILING_SECONDS", "30")
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid reflector environment: {e}") from e


# =============================================================================
# Exceptions
# =============================================================================


class ReflectorError(Exception):
    """Base exception for reflector errors."""

    pass


class ConfigurationError(ReflectorError):
    """Invalid or missing configuration."""

    pass


class UsageError(ReflectorError):
    """A reflector was used in a way its lifecycle does not allow."""

    pass


class ReflectorAlreadyRunningError(UsageError):
    """start() was called on a reflector whose loop is already active."""

    pass


class ReflectorStoppedError(UsageError):
    """An operation was issued after stop()."""

    pass


class ReflectorFailedError(ReflectorError):
    """The reflector gave up retrying; the mirror is no longer maintained."""

    pass
