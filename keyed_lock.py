import threading
from contextlib import contextmanager


class KeyedLock:
    """
    One lock per key, created on demand and dropped when nobody holds it.

    Work on different keys runs in parallel; work on the same key is
    serialized.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def is_locked(self, key) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()

    def __len__(self):
        with self._guard:
            return len(self._locks)
