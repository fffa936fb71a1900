"""Thread-safe in-memory mirror of a Kubernetes collection."""

import logging
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from models import MirrorEntry

logger = logging.getLogger(__name__)


def _metadata_field(obj: Any, attr: str, key: str) -> Any:
    """Read a metadata field from a kubernetes model object or a plain dict."""
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get(key)
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None
    if isinstance(metadata, dict):
        return metadata.get(key)
    return getattr(metadata, attr, None)


def object_name(obj: Any) -> str | None:
    return _metadata_field(obj, "name", "name")


def object_namespace(obj: Any) -> str | None:
    return _metadata_field(obj, "namespace", "namespace")


def object_version(obj: Any) -> str | None:
    return _metadata_field(obj, "resource_version", "resourceVersion")


def object_key(obj: Any) -> str:
    """Return the mirror key for an object.

    Namespaced objects are keyed as 'namespace/name', cluster-scoped
    objects by their name alone.

    Example: a pod 'web' in 'default' -> 'default/web', node 'n1' -> 'n1'
    """
    name = object_name(obj)
    if not name:
        raise ValueError(f"Object has no metadata.name: {obj!r}")
    namespace = object_namespace(obj)
    if namespace:
        return f"{namespace}/{name}"
    return name


class MirrorStore:
    """Local map from object key to its last observed state.

    Writers are serialized by a lock. `replace_all` builds the new map
    outside the lock and swaps it in, so `snapshot()` always returns the
    contents of exactly one replace generation plus the per-event
    mutations applied on top of it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, MirrorEntry] = {}
        self._cursor: str | None = None
        self._generation = 0

    @property
    def cursor(self) -> str | None:
        """Most recent collection version known to be fully applied."""
        with self._lock:
            return self._cursor

    @property
    def generation(self) -> int:
        """Number of `replace_all` calls applied so far."""
        with self._lock:
            return self._generation

    def _advance(self, version: str | None) -> None:
        # must hold lock
        if version:
            self._cursor = version

    def upsert(self, key: str, version: str | None, payload: Any) -> None:
        """Insert or fully replace the entry for key."""
        entry = MirrorEntry(key=key, version=version, payload=payload)
        with self._lock:
            self._entries[key] = entry
            self._advance(version)

    def remove(self, key: str, version: str | None = None) -> None:
        """Delete the entry for key; no-op when absent."""
        with self._lock:
            self._entries.pop(key, None)
            self._advance(version)

    def advance(self, version: str) -> None:
        """Move the cursor without touching any entry (watch bookmarks)."""
        with self._lock:
            self._advance(version)

    def replace_all(self, entries: Iterable[MirrorEntry], version: str | None) -> None:
        """Atomically replace the whole mirror with a new snapshot."""
        fresh = {entry.key: entry for entry in entries}
        with self._lock:
            self._entries = fresh
            self._generation += 1
            self._advance(version)
            generation = self._generation
        logger.debug(
            "Mirror replaced: %d entries, version=%s, generation=%d",
            len(fresh),
            version,
            generation,
        )

    def snapshot(self) -> Mapping[str, MirrorEntry]:
        """Return a read-only copy of the current contents."""
        with self._lock:
            return MappingProxyType(dict(self._entries))

    def get(self, key: str) -> MirrorEntry | None:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __repr__(self) -> str:
        return f"MirrorStore(entries={len(self)}, cursor={self.cursor!r})"
