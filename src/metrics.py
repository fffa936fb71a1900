"""Prometheus metrics for resource reflectors."""

from prometheus_client import Counter, Histogram, Gauge, Info

from models import EventType, ReflectorPhase

# Bootstrap (list) metrics
LIST_TOTAL = Counter(
    "kube_reflector_list_total",
    "Total number of full-collection list calls",
    ["kind", "status"],
)

LIST_DURATION = Histogram(
    "kube_reflector_list_duration_seconds",
    "Time spent in full-collection list calls",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Watch metrics
WATCH_SESSIONS = Counter(
    "kube_reflector_watch_sessions_total",
    "Total number of watch sessions, by how they ended",
    ["kind", "outcome"],
)

WATCH_EVENTS = Counter(
    "kube_reflector_watch_events_total",
    "Total number of watch events applied to the mirror",
    ["kind", "type"],
)

# Retry and failure metrics
BACKOFF_SECONDS = Histogram(
    "kube_reflector_backoff_seconds",
    "Delays slept before retrying a failed list",
    ["kind"],
    buckets=(0.1, 0.2, 0.4, 0.8, 1.6, 3.2, 6.4, 12.8, 25.6),
)

ESCALATIONS = Counter(
    "kube_reflector_escalations_total",
    "Total number of failures reported to the escalation callback",
    ["kind", "reason"],
)

# Mirror state metrics
MIRROR_OBJECTS = Gauge(
    "kube_reflector_mirror_objects",
    "Number of objects currently held in the mirror",
    ["kind"],
)

PHASE = Gauge(
    "kube_reflector_phase",
    "Current reconciliation loop phase (1 for the active phase)",
    ["kind", "phase"],
)

REFLECTOR_INFO = Info(
    "kube_reflector",
    "Information about the reflector build",
)


def set_reflector_info(version: str) -> None:
    """Set build info labels."""
    REFLECTOR_INFO.info({"version": version})


def set_phase(kind: str, phase: ReflectorPhase) -> None:
    """Mark `phase` as the active phase for `kind`."""
    for candidate in ReflectorPhase:
        PHASE.labels(kind=kind, phase=candidate.value).set(
            1 if candidate is phase else 0
        )


def init_metrics(kind: str) -> None:
    """Initialize all metrics of one reflector kind with zero values.

    Prometheus metrics with labels don't appear until used.
    This ensures all metrics are visible as soon as a reflector exists.
    """
    for status in ("success", "error"):
        LIST_TOTAL.labels(kind=kind, status=status)
    LIST_DURATION.labels(kind=kind)

    for outcome in ("closed", "error", "stopped"):
        WATCH_SESSIONS.labels(kind=kind, outcome=outcome)
    for event_type in EventType:
        WATCH_EVENTS.labels(kind=kind, type=event_type.value)

    BACKOFF_SECONDS.labels(kind=kind)
    for reason in ("initial_sync", "permanent"):
        ESCALATIONS.labels(kind=kind, reason=reason)

    MIRROR_OBJECTS.labels(kind=kind).set(0)
    set_phase(kind, ReflectorPhase.STARTING)
