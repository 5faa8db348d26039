"""Latest-request-wins bookkeeping for concurrent reads of the same query."""

from __future__ import annotations

import threading
from typing import Dict, Hashable


class RequestGenerations:
    """Monotonic generation counter per query shape.

    A caller takes a generation with `begin(shape)` before issuing a request
    and checks `is_current(shape, generation)` when the response arrives; a
    response for an older generation is stale and should be discarded.
    """

    def __init__(self) -> None:
        self._latest: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def begin(self, shape: Hashable) -> int:
        with self._lock:
            generation = self._latest.get(shape, 0) + 1
            self._latest[shape] = generation
            return generation

    def is_current(self, shape: Hashable, generation: int) -> bool:
        with self._lock:
            return self._latest.get(shape, 0) == generation

    def latest(self, shape: Hashable) -> int:
        with self._lock:
            return self._latest.get(shape, 0)
