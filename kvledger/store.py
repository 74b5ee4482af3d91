"""
store.py - Key-value store interface for the ledger

The ledger persists everything in an external key-value store with one
identifier per record. This module defines what the ledger needs from it.

Classes:
- KeyValueStore: Protocol defining get / put / conditional_update
- UpdateResult: Outcome of a conditional update
- InMemoryStore: Thread-safe in-process implementation

Required guarantees from any implementation:
- read-your-writes on the same key
- conditional_update is atomic and linearizable per key

Nothing is guaranteed across keys.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, TypeVar, runtime_checkable
import copy
import threading

from .core import Item, LedgerError, StoreError


T = TypeVar("T")


class UpdateResult(Enum):
    """
    Outcome of a conditional update.

    APPLIED: All expected fields matched and the new fields were written.
    CONDITION_FAILED: The stored record did not match; nothing was written.
    """
    APPLIED = "applied"
    CONDITION_FAILED = "condition_failed"


@runtime_checkable
class KeyValueStore(Protocol):
    """
    Protocol for the external key-value store.

    Records live in logical tables and are addressed by a single string key.
    Failures other than a failed condition are raised as exceptions.
    """

    def get(self, table: str, key: str) -> Optional[Item]:
        """Return a copy of the record, or None if absent."""
        ...

    def put(self, table: str, key: str, item: Mapping[str, Any]) -> None:
        """Unconditionally create or replace the record (last write wins)."""
        ...

    def conditional_update(
        self,
        table: str,
        key: str,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]],
    ) -> UpdateResult:
        """
        Atomically set fields on a record if it matches expectations.

        Args:
            table: Logical table name
            key: Record key
            fields: Attributes to set (merged into the existing record)
            expected: Attribute values the stored record must hold. None
                      means the key must be absent; the record is then
                      created from fields.

        Returns:
            UpdateResult.APPLIED or UpdateResult.CONDITION_FAILED
        """
        ...


class InMemoryStore:
    """
    In-process KeyValueStore.

    One lock guards all tables, which makes every single-key operation
    atomic and linearizable. Records are deep-copied on the way in and out
    so callers can never mutate stored state.

    Example:
        store = InMemoryStore()
        store.put("Balances", "alice", {"user_id": "alice", "available": "100", "total": "100"})
        store.conditional_update(
            "Balances", "alice",
            fields={"available": "60", "total": "60"},
            expected={"available": "100", "total": "100"},
        )
    """

    def __init__(self, tables: Optional[Dict[str, Dict[str, Item]]] = None):
        """
        Initialize the store.

        Args:
            tables: Optional initial contents, mapping table -> key -> item.
        """
        self._lock = threading.Lock()
        self._tables: Dict[str, Dict[str, Item]] = {}
        for table, records in (tables or {}).items():
            self._tables[table] = {k: copy.deepcopy(dict(v)) for k, v in records.items()}

    def get(self, table: str, key: str) -> Optional[Item]:
        _check_key(table, key)
        with self._lock:
            record = self._tables.get(table, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, table: str, key: str, item: Mapping[str, Any]) -> None:
        _check_key(table, key)
        with self._lock:
            self._tables.setdefault(table, {})[key] = copy.deepcopy(dict(item))

    def conditional_update(
        self,
        table: str,
        key: str,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]],
    ) -> UpdateResult:
        _check_key(table, key)
        with self._lock:
            records = self._tables.setdefault(table, {})
            current = records.get(key)

            if expected is None:
                if current is not None:
                    return UpdateResult.CONDITION_FAILED
                records[key] = copy.deepcopy(dict(fields))
                return UpdateResult.APPLIED

            if current is None:
                return UpdateResult.CONDITION_FAILED
            for name, value in expected.items():
                if name not in current or current[name] != value:
                    return UpdateResult.CONDITION_FAILED

            current.update(copy.deepcopy(dict(fields)))
            return UpdateResult.APPLIED

    def keys(self, table: str) -> List[str]:
        """Return the sorted keys of a table."""
        with self._lock:
            return sorted(self._tables.get(table, {}))

    def __repr__(self):
        with self._lock:
            sizes = ", ".join(f"{t}={len(r)}" for t, r in sorted(self._tables.items()))
        return f"InMemoryStore({sizes})"


def call_store(action: str, fn: Callable[..., T], *args: Any) -> T:
    """
    Invoke a store operation, converting foreign failures into StoreError.

    LedgerError subclasses raised by the store pass through unchanged.

    Args:
        action: Short description used in the error message
        fn: Bound store method
        *args: Arguments for fn

    Raises:
        StoreError: If fn raises anything that is not a LedgerError.
    """
    try:
        return fn(*args)
    except LedgerError:
        raise
    except Exception as e:
        raise StoreError(f"failed to {action}: {e}") from e


def _check_key(table: str, key: str) -> None:
    if not isinstance(table, str) or not table:
        raise StoreError(f"invalid table name: {table!r}")
    if not isinstance(key, str) or not key:
        raise StoreError(f"invalid key: {key!r}")
