"""
In-process per-entity locks.

Lifecycle transitions, bundle windows and delinquency updates serialize on
one entity at a time. Inside a single process the worker threads serialize
on an ``RLock`` keyed by ``(kind, id)``; across processes the callers also
take ``SELECT ... FOR UPDATE`` on the entity row (a no-op on SQLite, which
serializes writers itself).

Locks are reference counted and dropped from the registry once the last
holder or waiter releases them.

Usage:
    with entity_lock("card", card_id):
        card = get_scoped(Card, card_id, account_id=account_id, for_update=True)
        ...
        db.session.commit()
"""

import threading
from contextlib import contextmanager

_registry_guard = threading.Lock()
_registry: dict[tuple[str, int], list] = {}  # key -> [RLock, refcount]


def _acquire_entry(key):
    with _registry_guard:
        entry = _registry.get(key)
        if entry is None:
            entry = [threading.RLock(), 0]
            _registry[key] = entry
        entry[1] += 1
        return entry


def _release_entry(key, entry):
    with _registry_guard:
        entry[1] -= 1
        if entry[1] == 0:
            _registry.pop(key, None)


@contextmanager
def entity_lock(kind: str, entity_id: int):
    """Hold the process-local lock for one entity for the duration of the block."""
    key = (kind, int(entity_id))
    entry = _acquire_entry(key)
    lock = entry[0]
    lock.acquire()
    try:
        yield
    finally:
        lock.release()
        _release_entry(key, entry)


def held_lock_count() -> int:
    """Number of entities currently locked or awaited."""
    with _registry_guard:
        return len(_registry)
