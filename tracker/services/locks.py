"""
Per-subtree and per-record serialization.

Writers hold only the scope they mutate:
    - ("roots", project_id)        root-level milestone list of a project
    - ("subtree", milestone_id)    everything under one root milestone
    - ("record", kind, entity_id)  one entity's signature workflow

Locks live in a process-wide registry and are always acquired in sorted key
order, so two writers needing overlapping scopes cannot deadlock. They are
re-entrant: a signature completion that mutates the hierarchy may take
subtree locks while holding its record lock.

Cross-process safety comes from the database: rows are re-read with
``populate_existing`` after the lock is taken and every UPDATE is guarded by
the model's ``version_id_col``.
"""

import threading
import weakref
from contextlib import contextmanager


class _KeyLock:
    """Re-entrant lock that the weak registry can reference."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.RLock()

    def acquire(self):
        self._lock.acquire()

    def release(self):
        self._lock.release()


# Entries disappear once no writer holds or waits on the key.
_registry: "weakref.WeakValueDictionary[tuple, _KeyLock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def roots_key(project_id: int) -> tuple:
    return ("roots", project_id)


def subtree_key(milestone_id: int) -> tuple:
    return ("subtree", milestone_id)


def record_key(entity_kind: str, entity_id: int) -> tuple:
    return ("record", str(entity_kind), entity_id)


def _lock_for(key: tuple) -> _KeyLock:
    with _registry_lock:
        lock = _registry.get(key)
        if lock is None:
            lock = _KeyLock()
            _registry[key] = lock
        return lock


@contextmanager
def hold(*keys):
    """Acquire the locks for ``keys`` (duplicates ignored) in sorted order."""
    ordered = sorted(set(keys), key=repr)
    acquired = []
    try:
        for key in ordered:
            lock = _lock_for(key)
            lock.acquire()
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()
