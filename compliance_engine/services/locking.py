"""
Keyed in-process locks.

Serializes mutations of one obligation (or one materialization key, or one
service's publish) across request threads and the scheduler tick running in
the same process. Cross-process safety comes from the database: row locks
(``SELECT ... FOR UPDATE`` where supported), unique constraints and the
compare-and-set publish pointer.

Usage:
    from compliance_engine.services.locking import keyed_lock

    with keyed_lock("obligation", instance_id):
        ...
"""

import threading
from contextlib import contextmanager

# key → [lock, holders]; entries are dropped once nobody holds or waits
_locks: dict[tuple, list] = {}
_registry_lock = threading.Lock()


@contextmanager
def keyed_lock(*key):
    with _registry_lock:
        entry = _locks.setdefault(key, [threading.RLock(), 0])
        entry[1] += 1
    lock = entry[0]
    lock.acquire()
    try:
        yield
    finally:
        lock.release()
        with _registry_lock:
            entry[1] -= 1
            if entry[1] == 0:
                _locks.pop(key, None)


def active_lock_count() -> int:
    with _registry_lock:
        return len(_locks)
