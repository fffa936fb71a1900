"""Local mirror of a Kubernetes collection kept in sync by list + watch.

A reflector performs a full list (bootstrap) to populate its mirror, then
follows a watch stream from the list's resource version. Whenever the
watch ends, for whatever reason, the reflector lists again and resumes
watching. Failed lists are retried with exponential backoff; once the next
delay would exceed the configured ceiling the reflector gives up and
reports the failure to its owner.
"""

import functools
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes import watch

from _version import __version__
from metrics import (
    BACKOFF_SECONDS,
    ESCALATIONS,
    LIST_DURATION,
    LIST_TOTAL,
    MIRROR_OBJECTS,
    WATCH_EVENTS,
    WATCH_SESSIONS,
    init_metrics,
    set_phase,
    set_reflector_info,
)
from models import (
    ConfigurationError,
    EventType,
    MirrorEntry,
    ReflectorAlreadyRunningError,
    ReflectorConfig,
    ReflectorFailedError,
    ReflectorPhase,
    ReflectorScope,
    ReflectorStoppedError,
    UsageError,
)
from store import MirrorStore, object_key, object_version

logger = logging.getLogger(__name__)

FailureCallback = Callable[[BaseException], None]


def format_selector(selector: Mapping[str, str] | None) -> str:
    """Render an equality selector dict as 'k1=v1,k2=v2'."""
    if not selector:
        return ""
    return ",".join(f"{key}={value}" for key, value in selector.items())


def _list_result(result: Any) -> tuple[list[Any], str | None]:
    """Extract items and collection resource version from a list response.

    Core API calls return model objects (V1PodList), CustomObjectsApi
    returns plain dicts.
    """
    if isinstance(result, dict):
        items = result.get("items") or []
        version = (result.get("metadata") or {}).get("resourceVersion")
        return list(items), version
    items = getattr(result, "items", None) or []
    metadata = getattr(result, "metadata", None)
    version = getattr(metadata, "resource_version", None) if metadata else None
    return list(items), version


class ResourceReflector:
    """Keep an in-memory mirror of one Kubernetes collection.

    Args:
        kind: Human-readable resource kind, used in logs and metric labels
        api: Kubernetes API object exposing the list method
        list_method_name: Name of the list method on `api`
            (e.g. 'list_namespaced_pod' or 'list_node')
        scope: Namespace or cluster scope of the listing
        labels: Equality label selector
        fields: Equality field selector
        config: Timeouts and backoff policy
        on_failure: Called with the error when the mirror cannot be trusted:
            on any list failure before the first sync, and once when the
            reconciliation loop gives up
        log: Logger to use instead of the module logger
        watch_factory: Callable returning a kubernetes `watch.Watch`
    """

    def __init__(
        self,
        kind: str,
        api: Any,
        list_method_name: str,
        scope: ReflectorScope,
        *,
        labels: Mapping[str, str] | None = None,
        fields: Mapping[str, str] | None = None,
        config: ReflectorConfig | None = None,
        on_failure: FailureCallback | None = None,
        log: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.kind = kind
        self.api = api
        self.list_method_name = list_method_name
        self.scope = scope
        self.labels = dict(labels or {})
        self.fields = dict(fields or {})
        self.config = config or ReflectorConfig()
        self.on_failure = on_failure
        self.log = log or logger
        self._watch_factory = watch_factory

        list_method = getattr(api, list_method_name, None)
        if not callable(list_method):
            raise ConfigurationError(
                f"{type(api).__name__} has no list method '{list_method_name}'"
            )
        self._list_method = list_method

        self.store = MirrorStore()
        self.first_sync_complete = False

        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._done = threading.Event()
        self._started = False
        self._thread: threading.Thread | None = None
        self._in_flight: Any = None
        self._phase = ReflectorPhase.STARTING

        init_metrics(kind)

    def __repr__(self) -> str:
        return (
            f"ResourceReflector(kind={self.kind!r}, scope={self.scope}, "
            f"phase={self._phase.value})"
        )

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> ReflectorPhase:
        return self._phase

    @property
    def cursor(self) -> str | None:
        return self.store.cursor

    @property
    def running(self) -> bool:
        """True while the reconciliation loop thread is alive."""
        return self._thread is not None and not self._done.is_set()

    @property
    def label_selector(self) -> str:
        return format_selector(self.labels)

    @property
    def field_selector(self) -> str:
        return format_selector(self.fields)

    def snapshot(self) -> Mapping[str, MirrorEntry]:
        """Read-only copy of the mirror, keyed by object key."""
        return self.store.snapshot()

    @property
    def resources(self) -> dict[str, Any]:
        """Current objects keyed by object key."""
        return {key: entry.payload for key, entry in self.store.snapshot().items()}

    def get(self, key: str) -> Any:
        """Return the mirrored object for key, or None."""
        entry = self.store.get(key)
        return entry.payload if entry is not None else None

    # -------------------------------------------------------------------------
    # Bootstrap and watch
    # -------------------------------------------------------------------------

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.scope.is_namespaced:
            kwargs["namespace"] = self.scope.namespace
        if self.labels:
            kwargs["label_selector"] = self.label_selector
        if self.fields:
            kwargs["field_selector"] = self.field_selector
        return kwargs

    def _check_not_stopped(self) -> None:
        if self._stopping.is_set():
            raise ReflectorStoppedError(f"{self.kind} reflector was stopped")

    def bootstrap(self, resource_version: str | None = None) -> str | None:
        """List the whole collection and replace the mirror with it.

        Args:
            resource_version: Serve the list from at least this version

        Returns:
            The collection resource version to resume watching from.

        Raises:
            ReflectorStoppedError: if stop() was already called
            Whatever the list call raised, after logging it.
        """
        self._check_not_stopped()
        return self._bootstrap(resource_version)

    def _bootstrap(self, resource_version: str | None = None) -> str | None:
        kwargs = self._request_kwargs()
        kwargs["_request_timeout"] = self.config.request_timeout
        if resource_version:
            kwargs["resource_version"] = resource_version
            kwargs["resource_version_match"] = "NotOlderThan"

        start_time = time.monotonic()
        try:
            result = self._list_method(**kwargs)
        except Exception as e:
            LIST_TOTAL.labels(kind=self.kind, status="error").inc()
            self.log.error("Error listing %s in %s: %s", self.kind, self.scope, e)
            if not self.first_sync_complete:
                self._escalate(e, "initial_sync")
            raise
        finally:
            LIST_DURATION.labels(kind=self.kind).observe(time.monotonic() - start_time)

        items, version = _list_result(result)
        self.store.replace_all(
            (MirrorEntry(object_key(item), object_version(item), item) for item in items),
            version,
        )
        self.first_sync_complete = True

        LIST_TOTAL.labels(kind=self.kind, status="success").inc()
        MIRROR_OBJECTS.labels(kind=self.kind).set(len(self.store))
        self.log.debug(
            "Listed %d %s in %s at version %s", len(items), self.kind, self.scope, version
        )
        return version

    def _apply_event(self, event: dict[str, Any]) -> bool:
        """Apply one watch event to the mirror.

        Returns False when the event ends the session.
        """
        raw_type = event.get("type")
        obj = event.get("object")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            self.log.warning("Ignoring %s watch event of unknown type %r", self.kind, raw_type)
            return True

        WATCH_EVENTS.labels(kind=self.kind, type=event_type.value).inc()

        if event_type is EventType.ERROR:
            self.log.warning(
                "%s watch returned an error: %s",
                self.kind,
                event.get("raw_object", obj),
            )
            return False

        version = object_version(obj)
        if event_type is EventType.BOOKMARK:
            if version:
                self.store.advance(version)
            return True

        key = object_key(obj)
        if event_type is EventType.DELETED:
            self.store.remove(key, version)
        else:
            self.store.upsert(key, version, obj)
        MIRROR_OBJECTS.labels(kind=self.kind).set(len(self.store))
        return True

    def watch(self, resource_version: str | None) -> str:
        """Follow one watch session, applying events until it ends.

        Errors are logged and end the session; they are never raised, the
        caller re-lists after every session regardless of how it ended.

        Returns:
            How the session ended: 'closed', 'error' or 'stopped'.

        Raises:
            ReflectorStoppedError: if stop() was already called
        """
        self._check_not_stopped()
        return self._watch_session(resource_version)

    def _stoppable_list_method(self, w: Any) -> Callable[..., Any]:
        """Wrap the list method so a stop issued before the stream connected
        still ends the session.

        Watch.stream() clears its stop flag before calling the list method.
        """
        list_method = self._list_method

        @functools.wraps(list_method)
        def call(*args: Any, **kwargs: Any) -> Any:
            response = list_method(*args, **kwargs)
            if self._stopping.is_set():
                w.stop()
                close = getattr(response, "close", None)
                if callable(close):
                    close()
            return response

        return call

    def _watch_session(self, resource_version: str | None) -> str:
        w = self._watch_factory()
        with self._lock:
            if self._stopping.is_set():
                return "stopped"
            self._in_flight = w

        kwargs = self._request_kwargs()
        kwargs["timeout_seconds"] = self.config.idle_timeout
        kwargs["allow_watch_bookmarks"] = True
        if resource_version:
            kwargs["resource_version"] = resource_version

        outcome = "closed"
        try:
            for event in w.stream(self._stoppable_list_method(w), **kwargs):
                if self._stopping.is_set():
                    break
                if not self._apply_event(event):
                    outcome = "error"
                    break
        except Exception as e:
            outcome = "error"
            if not self._stopping.is_set():
                self.log.warning(
                    "Watch for %s in %s ended with error: %s", self.kind, self.scope, e
                )
        finally:
            with self._lock:
                self._in_flight = None
            w.stop()

        if self._stopping.is_set():
            outcome = "stopped"
        WATCH_SESSIONS.labels(kind=self.kind, outcome=outcome).inc()
        self.log.debug("Watch for %s in %s %s", self.kind, self.scope, outcome)
        return outcome

    # -------------------------------------------------------------------------
    # Reconciliation loop
    # -------------------------------------------------------------------------

    def _set_phase(self, phase: ReflectorPhase) -> None:
        self._phase = phase
        set_phase(self.kind, phase)

    def _escalate(self, error: BaseException, reason: str) -> None:
        ESCALATIONS.labels(kind=self.kind, reason=reason).inc()
        if self.on_failure is None:
            return
        try:
            self.on_failure(error)
        except Exception:
            self.log.exception("Failure callback for %s raised", self.kind)

    def _sleep(self, delay: float) -> bool:
        """Sleep for delay seconds; returns True if stop was requested."""
        return self._stopping.wait(delay)

    def _run(self) -> None:
        try:
            self._reconcile()
        finally:
            self._done.set()

    def _reconcile(self) -> None:
        delay = self.config.initial_backoff
        # start() already listed, so the first pass goes straight to watching
        needs_sync = False

        while not self._stopping.is_set():
            if needs_sync:
                self._set_phase(ReflectorPhase.SYNCING)
                try:
                    self._bootstrap(self.store.cursor)
                except Exception as e:
                    next_delay = delay * self.config.backoff_factor
                    if next_delay > self.config.backoff_ceiling:
                        self.log.error("%s reflector failed permanently", self.kind)
                        self._set_phase(ReflectorPhase.FAILED)
                        error = ReflectorFailedError(
                            f"Listing {self.kind} in {self.scope} kept failing, "
                            f"giving up after a {delay:.1f}s backoff"
                        )
                        error.__cause__ = e
                        self._escalate(error, "permanent")
                        return

                    self._set_phase(ReflectorPhase.BACKOFF)
                    self.log.warning(
                        "Retrying %s list in %.1fs", self.kind, delay
                    )
                    BACKOFF_SECONDS.labels(kind=self.kind).observe(delay)
                    if self._sleep(delay):
                        break
                    delay = next_delay
                    continue
                delay = self.config.initial_backoff

            needs_sync = True
            self._set_phase(ReflectorPhase.WATCHING)
            self._watch_session(self.store.cursor)

        self._set_phase(ReflectorPhase.STOPPED)
        self.log.info("Stopped %s reflector for %s", self.kind, self.scope)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Populate the mirror, then keep it in sync in a background thread.

        The first list runs in the calling thread, so the mirror is
        populated when this returns. List errors propagate and leave the
        reflector startable again.

        Raises:
            ReflectorAlreadyRunningError: if the loop was already started
            ReflectorStoppedError: if stop() was already called
            UsageError: if the loop already ran to completion
        """
        with self._lock:
            if self._stopping.is_set():
                raise ReflectorStoppedError(f"{self.kind} reflector was stopped")
            if self._started and not self._done.is_set():
                raise ReflectorAlreadyRunningError(
                    f"{self.kind} reflector is already running"
                )
            if self._started:
                raise UsageError(
                    f"{self.kind} reflector already ran; create a new one"
                )
            self._started = True

        self._set_phase(ReflectorPhase.SYNCING)
        try:
            self._bootstrap()
        except Exception:
            with self._lock:
                self._started = False
            self._set_phase(ReflectorPhase.STARTING)
            raise

        set_reflector_info(__version__)
        thread = threading.Thread(
            target=self._run,
            name=f"reflector-{self.kind}",
            daemon=True,
        )
        with self._lock:
            self._thread = thread
        thread.start()
        self.log.info(
            "Started %s reflector for %s with %d objects",
            self.kind,
            self.scope,
            len(self.store),
        )

    def stop(self, wait: bool = False, timeout: float | None = None) -> bool:
        """Request shutdown and cancel any in-flight watch.

        Args:
            wait: Block until the loop thread has exited
            timeout: Maximum seconds to wait when `wait` is set

        Returns:
            True if the loop has fully exited.
        """
        with self._lock:
            self._stopping.set()
            in_flight = self._in_flight
            thread = self._thread

        if in_flight is not None:
            try:
                in_flight.stop()
            except Exception as e:
                self.log.warning("Error stopping watch for %s: %s", self.kind, e)

        if thread is None:
            self._set_phase(ReflectorPhase.STOPPED)
            self._done.set()
            return True

        if wait:
            thread.join(timeout)
        return self._done.is_set()

    def wait_stopped(self, timeout: float | None = None) -> bool:
        """Block until the loop has exited; returns False on timeout."""
        return self._done.wait(timeout)
