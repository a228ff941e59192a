import threading


class IdAllocator:
    """
    Hands out strictly increasing URL ids for this process.

    Seeded with the highest id already in the database, so the first call to
    next() returns seed + 1. Every read-increment-write happens under one
    lock, which makes it safe to share between request threads.

    There is no cross-process coordination: only one API instance may
    allocate ids. Running several writers needs a database sequence instead.
    """

    def __init__(self, seed: int = 0):
        if seed < 0:
            raise ValueError(f"Seed must be non-negative, got {seed}")
        self._last_id = seed
        self._lock = threading.Lock()

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id

    def next(self) -> int:
        with self._lock:
            self._last_id += 1
            return self._last_id
