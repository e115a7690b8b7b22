"""Versioned flow-instance stores used by the handler layer.

Two backends share one contract: ``get``, ``find``, ``list``, ``add``,
``upsert`` and ``delete``. Every write bumps the store-wide version counter,
stamps ``updated_at`` on the store and on the instance, and increments the
instance ``revision``. Writes may carry the revision the caller read
(``expected_revision``) and the revisions of other instances it consulted
(``read_set``); a mismatch raises :class:`VersionConflictError` so a
read-modify-write cycle can never silently overwrite a concurrent one.
"""

from __future__ import annotations

import copy
import logging
import pickle
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Mapping, MutableMapping, Optional

from .domain import AnyFlowInstance, FlowType, utcnow
from .exceptions import RecordNotFoundError, VersionConflictError

logger = logging.getLogger(__name__)

ReadSet = Mapping[str, int]


class BaseFlowStore:
    """Shared write protocol; subclasses supply the raw persistence calls."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------
    def _load(self, instance_id: str) -> Optional[AnyFlowInstance]:
        raise NotImplementedError

    def _save(self, instance: AnyFlowInstance) -> None:
        raise NotImplementedError

    def _remove(self, instance_id: str) -> bool:
        raise NotImplementedError

    def _all(self) -> List[AnyFlowInstance]:
        raise NotImplementedError

    def _bump(self, now: datetime) -> None:
        raise NotImplementedError

    def _clear(self) -> None:
        raise NotImplementedError

    @property
    def version(self) -> int:
        raise NotImplementedError

    @property
    def updated_at(self) -> datetime:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------
    def __contains__(self, instance_id: object) -> bool:
        if not isinstance(instance_id, str):
            return False
        return self._load(instance_id) is not None

    def __len__(self) -> int:
        return len(self._all())

    def __iter__(self) -> Iterator[AnyFlowInstance]:
        return iter(self.list())

    def find(self, instance_id: str) -> Optional[AnyFlowInstance]:
        instance = self._load(instance_id)
        return copy.deepcopy(instance) if instance is not None else None

    def get(self, instance_id: str) -> AnyFlowInstance:
        instance = self.find(instance_id)
        if instance is None:
            raise RecordNotFoundError(f"Flow {instance_id!r} not found")
        return instance

    def list(self, flow_type: Optional[FlowType] = None) -> List[AnyFlowInstance]:
        return [
            copy.deepcopy(instance)
            for instance in self._all()
            if flow_type is None or instance.flow_id == flow_type
        ]

    def revision_of(self, instance_id: str) -> int:
        instance = self._load(instance_id)
        return instance.revision if instance is not None else 0

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------
    def add(self, instance: AnyFlowInstance, *, read_set: Optional[ReadSet] = None) -> AnyFlowInstance:
        """Insert a new instance; fails if the id is already taken by any flow."""

        return self.upsert(instance, expected_revision=0, read_set=read_set)

    def upsert(
        self,
        instance: AnyFlowInstance,
        *,
        expected_revision: Optional[int] = None,
        read_set: Optional[ReadSet] = None,
    ) -> AnyFlowInstance:
        with self._lock:
            current = self._load(instance.instance_id)
            if current is not None and current.flow_id != instance.flow_id:
                raise VersionConflictError(
                    f"Instance id {instance.instance_id!r} already belongs to "
                    f"{current.flow_id.value} flow"
                )
            current_revision = current.revision if current is not None else 0
            if expected_revision is not None and expected_revision != current_revision:
                logger.warning(
                    "Rejected stale write to %s (expected r%s, found r%s)",
                    instance.instance_id,
                    expected_revision,
                    current_revision,
                )
                raise VersionConflictError(
                    f"Flow {instance.instance_id!r} was modified concurrently "
                    f"(expected revision {expected_revision}, found {current_revision})"
                )
            for dependency_id, revision in (read_set or {}).items():
                if self.revision_of(dependency_id) != revision:
                    logger.warning(
                        "Rejected write to %s: dependency %s changed",
                        instance.instance_id,
                        dependency_id,
                    )
                    raise VersionConflictError(
                        f"Flow {dependency_id!r} changed while "
                        f"{instance.instance_id!r} was being updated"
                    )
            now = self._clock()
            stored = copy.deepcopy(instance)
            stored.revision = current_revision + 1
            stored.updated_at = now
            self._save(stored)
            self._bump(now)
            logger.debug(
                "Upserted flow %s (%s) r%s",
                stored.flow_id.value,
                stored.instance_id,
                stored.revision,
            )
            return copy.deepcopy(stored)

    def delete(self, instance_id: str) -> None:
        with self._lock:
            if not self._remove(instance_id):
                raise RecordNotFoundError(f"Flow {instance_id!r} not found")
            self._bump(self._clock())
            logger.debug("Deleted flow %s", instance_id)

    def reset(self) -> None:
        with self._lock:
            self._clear()
            logger.debug("Store reset")


class FlowStore(BaseFlowStore):
    """Dictionary-backed store; the default backend."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._items: MutableMapping[str, AnyFlowInstance] = {}
        self._version = 1
        self.created_at = clock()
        self._updated_at = self.created_at

    def _load(self, instance_id: str) -> Optional[AnyFlowInstance]:
        return self._items.get(instance_id)

    def _save(self, instance: AnyFlowInstance) -> None:
        self._items[instance.instance_id] = instance

    def _remove(self, instance_id: str) -> bool:
        return self._items.pop(instance_id, None) is not None

    def _all(self) -> List[AnyFlowInstance]:
        return list(self._items.values())

    def _bump(self, now: datetime) -> None:
        self._version += 1
        self._updated_at = now

    def _clear(self) -> None:
        self._items.clear()
        self._version = 1
        self.created_at = self._clock()
        self._updated_at = self.created_at

    @property
    def version(self) -> int:
        return self._version

    @property
    def updated_at(self) -> datetime:
        return self._updated_at


class SQLiteFlowStore(BaseFlowStore):
    """Store implementation that persists instances inside SQLite."""

    def __init__(self, path: str, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        connection = sqlite3.connect(path, check_same_thread=False)
        self._connection = connection
        connection.execute(
            "CREATE TABLE IF NOT EXISTS flows ("
            "id TEXT PRIMARY KEY, flow_type TEXT NOT NULL, "
            "revision INTEGER NOT NULL, payload BLOB NOT NULL)"
        )
        connection.execute(
            "CREATE TABLE IF NOT EXISTS store_meta ("
            "key TEXT PRIMARY KEY, version INTEGER NOT NULL, "
            "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        if self._meta() is None:
            now = clock().isoformat()
            connection.execute(
                "INSERT INTO store_meta (key, version, created_at, updated_at) "
                "VALUES ('store', 1, ?, ?)",
                (now, now),
            )
        connection.commit()

    def _meta(self) -> Optional[sqlite3.Row]:
        cursor = self._connection.execute(
            "SELECT version, created_at, updated_at FROM store_meta WHERE key = 'store'"
        )
        return cursor.fetchone()

    def _load(self, instance_id: str) -> Optional[AnyFlowInstance]:
        cursor = self._connection.execute(
            "SELECT payload FROM flows WHERE id = ?", (instance_id,)
        )
        row = cursor.fetchone()
        return pickle.loads(row[0]) if row is not None else None

    def _save(self, instance: AnyFlowInstance) -> None:
        self._connection.execute(
            "INSERT INTO flows (id, flow_type, revision, payload) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET flow_type = excluded.flow_type, "
            "revision = excluded.revision, payload = excluded.payload",
            (
                instance.instance_id,
                instance.flow_id.value,
                instance.revision,
                pickle.dumps(instance),
            ),
        )

    def _remove(self, instance_id: str) -> bool:
        cursor = self._connection.execute("DELETE FROM flows WHERE id = ?", (instance_id,))
        return cursor.rowcount > 0

    def _all(self) -> List[AnyFlowInstance]:
        cursor = self._connection.execute("SELECT payload FROM flows ORDER BY id")
        return [pickle.loads(row[0]) for row in cursor.fetchall()]

    def _bump(self, now: datetime) -> None:
        self._connection.execute(
            "UPDATE store_meta SET version = version + 1, updated_at = ? WHERE key = 'store'",
            (now.isoformat(),),
        )
        self._connection.commit()

    def _clear(self) -> None:
        now = self._clock().isoformat()
        self._connection.execute("DELETE FROM flows")
        self._connection.execute(
            "UPDATE store_meta SET version = 1, created_at = ?, updated_at = ? "
            "WHERE key = 'store'",
            (now, now),
        )
        self._connection.commit()

    def list(self, flow_type: Optional[FlowType] = None) -> List[AnyFlowInstance]:
        if flow_type is None:
            return self._all()
        cursor = self._connection.execute(
            "SELECT payload FROM flows WHERE flow_type = ? ORDER BY id", (flow_type.value,)
        )
        return [pickle.loads(row[0]) for row in cursor.fetchall()]

    @property
    def version(self) -> int:
        return int(self._meta()[0])

    @property
    def created_at(self) -> datetime:
        return datetime.fromisoformat(self._meta()[1])

    @property
    def updated_at(self) -> datetime:
        return datetime.fromisoformat(self._meta()[2])

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "SQLiteFlowStore":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.close()


def summarize(store: BaseFlowStore) -> Dict[str, object]:
    counts: Dict[str, int] = {flow_type.value: 0 for flow_type in FlowType}
    for instance in store.list():
        counts[instance.flow_id.value] += 1
    return {
        "version": store.version,
        "updated_at": store.updated_at,
        "counts": counts,
    }


__all__ = ["BaseFlowStore", "FlowStore", "SQLiteFlowStore", "ReadSet", "summarize"]
