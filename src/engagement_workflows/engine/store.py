"""Object store adapters.

The engine only needs a generic object store reachable by entity type and id,
with equality filters and ordered, limited queries. Two adapters ship here:

- :class:`MemoryStore` for tests and embedding
- :class:`JsonFileStore`, one JSON file per entity type (local-first, restartable)

Writes are atomic per record only. ``compare_and_set`` is the single
check-and-set primitive; callers use it wherever two requests may race on the
same record.

The lock is process-local. Running several processes against one
``JsonFileStore`` directory is not supported.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeVar

from engagement_workflows.engine.errors import DependencyError
from engagement_workflows.engine.workflow.models import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

Row = dict[str, Any]


class StoreError(Exception):
    """The backing store failed to read or write."""


class RecordNotFound(StoreError):
    def __init__(self, entity_type: str, record_id: str) -> None:
        super().__init__(f"{entity_type} {record_id!r} not found")
        self.entity_type = entity_type
        self.record_id = record_id


class RecordExists(StoreError):
    def __init__(self, entity_type: str, record_id: str) -> None:
        super().__init__(f"{entity_type} {record_id!r} already exists")
        self.entity_type = entity_type
        self.record_id = record_id


class ObjectStore(Protocol):
    def create(self, record: R) -> R: ...

    def get(self, model: type[R], record_id: str) -> R | None: ...

    def filter(
        self,
        model: type[R],
        *,
        order_by: str | None = None,
        limit: int | None = None,
        **where: object,
    ) -> list[R]: ...

    def update(self, model: type[R], record_id: str, **changes: object) -> R: ...

    def compare_and_set(
        self,
        model: type[R],
        record_id: str,
        *,
        field: str,
        expected: Collection[object],
        changes: dict[str, object],
    ) -> R | None: ...

    def delete(self, model: type[R], record_id: str) -> None: ...


def _plain(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    return value


def _sort_key(field: str):
    def key(row: Row) -> tuple[bool, Any]:
        value = row.get(field)
        return (value is None, value)

    return key


class _TableStore:
    """Shared query logic; subclasses decide where tables live."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def _load_unlocked(self, entity_type: str) -> dict[str, Row]:
        raise NotImplementedError

    def _save_unlocked(self, entity_type: str, rows: dict[str, Row]) -> None:
        raise NotImplementedError

    def create(self, record: R) -> R:
        entity_type = type(record).entity_type
        with self._lock:
            rows = self._load_unlocked(entity_type)
            if record.id in rows:
                raise RecordExists(entity_type, record.id)
            rows[record.id] = record.model_dump(mode="json")
            self._save_unlocked(entity_type, rows)
        return record

    def get(self, model: type[R], record_id: str) -> R | None:
        with self._lock:
            row = self._load_unlocked(model.entity_type).get(record_id)
        if row is None:
            return None
        return model.model_validate(row)

    def filter(
        self,
        model: type[R],
        *,
        order_by: str | None = None,
        limit: int | None = None,
        **where: object,
    ) -> list[R]:
        """Equality filter. ``order_by`` accepts a field name, ``-field`` for descending."""

        wanted = {k: _plain(v) for k, v in where.items()}
        with self._lock:
            rows = [
                dict(row)
                for row in self._load_unlocked(model.entity_type).values()
                if all(row.get(k) == v for k, v in wanted.items())
            ]

        if order_by:
            field = order_by.lstrip("-")
            rows.sort(key=_sort_key(field), reverse=order_by.startswith("-"))
        if limit is not None:
            rows = rows[:limit]
        return [model.model_validate(row) for row in rows]

    def update(self, model: type[R], record_id: str, **changes: object) -> R:
        with self._lock:
            rows = self._load_unlocked(model.entity_type)
            row = rows.get(record_id)
            if row is None:
                raise RecordNotFound(model.entity_type, record_id)
            updated = self._apply(model, row, changes)
            rows[record_id] = updated.model_dump(mode="json")
            self._save_unlocked(model.entity_type, rows)
            return updated

    def compare_and_set(
        self,
        model: type[R],
        record_id: str,
        *,
        field: str,
        expected: Collection[object],
        changes: dict[str, object],
    ) -> R | None:
        """Apply ``changes`` only if ``field`` currently holds one of ``expected``.

        Returns the updated record, or ``None`` when the current value did not match.
        """

        allowed = {_plain(v) for v in expected}
        with self._lock:
            rows = self._load_unlocked(model.entity_type)
            row = rows.get(record_id)
            if row is None:
                raise RecordNotFound(model.entity_type, record_id)
            if row.get(field) not in allowed:
                logger.debug(
                    "Compare-and-set lost",
                    extra={
                        "entity_type": model.entity_type,
                        "record_id": record_id,
                        "field": field,
                        "current": row.get(field),
                    },
                )
                return None
            updated = self._apply(model, row, changes)
            rows[record_id] = updated.model_dump(mode="json")
            self._save_unlocked(model.entity_type, rows)
            return updated

    def delete(self, model: type[R], record_id: str) -> None:
        with self._lock:
            rows = self._load_unlocked(model.entity_type)
            if rows.pop(record_id, None) is None:
                raise RecordNotFound(model.entity_type, record_id)
            self._save_unlocked(model.entity_type, rows)

    @staticmethod
    def _apply(model: type[R], row: Row, changes: dict[str, object]) -> R:
        current = model.model_validate(row)
        # Round-trip through JSON mode so enum/datetime values are normalised.
        merged = current.model_copy(update=changes).model_dump(mode="json")
        return model.model_validate(merged)


class MemoryStore(_TableStore):
    """Keeps every table in process memory."""

    def __init__(self) -> None:
        super().__init__()
        self._tables: dict[str, dict[str, Row]] = {}

    def _load_unlocked(self, entity_type: str) -> dict[str, Row]:
        return self._tables.setdefault(entity_type, {})

    def _save_unlocked(self, entity_type: str, rows: dict[str, Row]) -> None:
        self._tables[entity_type] = rows


class JsonFileStore(_TableStore):
    """Persists each entity type to ``<root>/<entity_type>.json``.

    Insertion order is preserved, so unordered queries return records in the
    order they were created (events rely on this).
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, entity_type: str) -> Path:
        return self._root / f"{entity_type}.json"

    def _load_unlocked(self, entity_type: str) -> dict[str, Row]:
        path = self._path(entity_type)
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StoreError(f"State file is not valid JSON: {path}") from e
        except OSError as e:
            raise StoreError(f"Failed to read state file: {path}") from e
        if not isinstance(raw, dict):
            raise StoreError(f"State file does not hold an object: {path}")
        return {str(k): v for k, v in raw.items() if isinstance(v, dict)}

    def _save_unlocked(self, entity_type: str, rows: dict[str, Row]) -> None:
        path = self._path(entity_type)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(rows, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
        except OSError as e:
            raise StoreError(f"Failed to write state file: {path}") from e


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Surface store failures as :class:`DependencyError`.

    Anything raised inside may follow writes that already landed, so callers see
    the operation as possibly applied.
    """

    try:
        yield
    except StoreError as e:
        raise DependencyError(f"Failed to {operation}: {e}") from e
