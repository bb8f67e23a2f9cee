from contextlib import contextmanager
import threading


class KeyedLocks:
    """One mutex per key, created on demand and dropped when unused.

    Serializes read-modify-write sequences that share an identity (a user's
    cart, a chat thread) inside one process. Cross-process safety comes from
    the database constraints, not from here.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


cart_locks = KeyedLocks()
thread_locks = KeyedLocks()
