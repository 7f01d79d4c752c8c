"""Per-job mutual exclusion for stage progression.

Submissions for different jobs run in parallel; submissions for the same
job are serialised. Inside one process this registry of locks does the
serialising; across processes the ``SELECT ... FOR UPDATE`` row lock
taken by the progression service does.

Usage:
    with job_lock(job_id):
        ...
"""

import threading
import weakref
from contextlib import contextmanager

_registry_lock = threading.Lock()
# entries disappear once no caller holds the lock object
_job_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()


def _lock_for(job_id: int) -> threading.Lock:
    with _registry_lock:
        lock = _job_locks.get(job_id)
        if lock is None:
            lock = threading.Lock()
            _job_locks[job_id] = lock
        return lock


@contextmanager
def job_lock(job_id: int):
    lock = _lock_for(job_id)
    with lock:
        yield

