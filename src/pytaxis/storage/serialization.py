"""Serialization helpers shared by the persistent backends.

- Timestamps are stored as integer microseconds since the Unix epoch
  (exact round trip, sortable as integers)
- Workflow snapshots are stored as JSON (executables are never persisted;
  they are re-bound from the Registry on recovery)
- Opaque values (user data, task return values) are pickled
"""

from __future__ import annotations

import json
import logging
import pickle
from datetime import UTC, datetime, timedelta
from typing import Any

from pytaxis.models import Workflow
from pytaxis.storage.base import StorageError, ensure_utc

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)


def to_micros(value: datetime | None) -> int | None:
    if value is None:
        return None
    return (ensure_utc(value) - _EPOCH) // _MICROSECOND


def from_micros(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(microseconds=int(value))


def dump_workflow(workflow: Workflow) -> str:
    return json.dumps(workflow.to_dict(), separators=(",", ":"))


def load_workflow(data: str | bytes) -> Workflow:
    try:
        return Workflow.from_dict(json.loads(data))
    except json.JSONDecodeError as e:
        raise StorageError(f"Corrupt workflow snapshot: {e}") from e


def dump_user_data(value: Any) -> bytes:
    """Pickle caller data; unpicklable data cannot be made durable."""
    try:
        return pickle.dumps(value)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise StorageError(f"user_data is not picklable: {e}") from e


def dump_value(value: Any, task_name: str) -> bytes | None:
    """Pickle a task return value, dropping it (with a warning) if impossible.

    A return value that cannot be persisted must not fail the execution:
    the outcome and code are what the engine relies on.
    """
    if value is None:
        return None
    try:
        return pickle.dumps(value)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        logger.warning(f"Return value of task '{task_name}' is not picklable, not persisted: {e}")
        return None


def load_blob(data: bytes | None) -> Any:
    if data is None:
        return None
    return pickle.loads(data)
