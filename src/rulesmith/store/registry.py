"""
In-memory keyed stores for Rulesmith.

Templates and extension registry entries live in explicit store objects that
are passed to each component at construction, instead of module-level maps.

Design:
    - One RLock per store; every read and write holds it
    - Per-key get/put/delete are atomic (a reader never sees a torn write)
    - values() and items() return snapshots, safe to iterate while others write
    - Clear error messages for unknown keys

Usage:
    from rulesmith.store.registry import TemplateStore

    store = TemplateStore()
    store.put(template.id, template)
    template = store.get("base")
"""

import threading
from typing import Callable, Generic, Iterator, TypeVar

from rulesmith.errors import ExtensionNotFoundError, RulesmithError, TemplateNotFoundError
from rulesmith.schema import ExtensionRegistryEntry, Template

V = TypeVar("V")


class KeyedStore(Generic[V]):
    """
    Thread-safe mapping from string ids to values.

    Subclasses set ``not_found`` to the error raised by get().
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._items: dict[str, V] = {}
        self._lock = threading.RLock()

    def not_found(self, key: str) -> RulesmithError:
        """Error raised when get() misses."""
        return RulesmithError(message=f"Key not found: {key}")

    def get(self, key: str) -> V:
        """
        Look up a value by key.

        Raises:
            RulesmithError: The subclass's not-found error
        """
        with self._lock:
            if key not in self._items:
                raise self.not_found(key)
            return self._items[key]

    def get_optional(self, key: str) -> V | None:
        """Look up a value, returning None if not found."""
        with self._lock:
            return self._items.get(key)

    def put(self, key: str, value: V) -> None:
        """Insert or replace the value stored under key."""
        if not key:
            msg = "Store keys must be non-empty"
            raise ValueError(msg)
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if the key was removed, False if it wasn't present
        """
        with self._lock:
            return self._items.pop(key, None) is not None

    def update(self, key: str, fn: Callable[[V], V]) -> V:
        """
        Atomically replace the value under key with fn(value).

        The lock is held while fn runs, so fn must not call back into
        this store from another thread.
        """
        with self._lock:
            value = fn(self.get(key))
            self._items[key] = value
            return value

    def has(self, key: str) -> bool:
        """Check if a key is present."""
        with self._lock:
            return key in self._items

    def keys(self) -> list[str]:
        """Sorted snapshot of the keys."""
        with self._lock:
            return sorted(self._items)

    def values(self) -> list[V]:
        """Snapshot of the values, ordered by key."""
        with self._lock:
            return [self._items[k] for k in sorted(self._items)]

    def items(self) -> list[tuple[str, V]]:
        """Snapshot of (key, value) pairs, ordered by key."""
        with self._lock:
            return [(k, self._items[k]) for k in sorted(self._items)]

    def clear(self) -> None:
        """Remove everything."""
        with self._lock:
            self._items.clear()

    def lock(self) -> threading.RLock:
        """The store's lock, for callers composing several operations."""
        return self._lock

    def __len__(self) -> int:
        """Return the number of stored values."""
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[V]:
        """Iterate over a snapshot of the values."""
        return iter(self.values())

    def __contains__(self, key: object) -> bool:
        """Check membership using the 'in' operator."""
        with self._lock:
            return key in self._items

    def __repr__(self) -> str:
        """String representation of the store."""
        return f"<{self.__class__.__name__}: [{', '.join(self.keys())}]>"


class TemplateStore(KeyedStore[Template]):
    """Store of registered templates keyed by template id."""

    def not_found(self, key: str) -> RulesmithError:
        """Templates raise TemplateNotFoundError."""
        return TemplateNotFoundError(template_id=key)

    def children_of(self, parent_id: str) -> list[Template]:
        """Templates whose parent_id is parent_id."""
        return [t for t in self.values() if t.inheritance.parent_id == parent_id]


class ExtensionStore(KeyedStore[ExtensionRegistryEntry]):
    """Store of extension registry entries keyed by extension id."""

    def not_found(self, key: str) -> RulesmithError:
        """Extensions raise ExtensionNotFoundError."""
        return ExtensionNotFoundError(extension_id=key)
