import bisect
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_MAX_CONCURRENT = 3


@dataclass
class QueueItem:
    build_id: str
    project_id: str
    priority: int
    sequence: int
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None

    @property
    def sort_key(self):
        # Higher priority first, then strict FIFO by enqueue order.
        return (-self.priority, self.sequence)


class BuildQueue:
    """Priority-ordered waiting list plus a bounded count of admitted builds."""

    def __init__(self, max_concurrent=DEFAULT_MAX_CONCURRENT):
        self.max_concurrent = max(1, int(max_concurrent))
        self._lock = threading.Lock()
        self._waiting = []
        self._keys = []
        self._active = {}
        self._sequence = itertools.count()

    def __len__(self):
        with self._lock:
            return len(self._waiting)

    def __contains__(self, build_id):
        with self._lock:
            return self._index(build_id) != -1

    def _index(self, build_id):
        for i, item in enumerate(self._waiting):
            if item.build_id == build_id:
                return i
        return -1

    def _has_slot(self):
        return len(self._active) < self.max_concurrent

    def enqueue(self, build_id, project_id, priority=0):
        with self._lock:
            if self._index(build_id) != -1 or build_id in self._active:
                raise ValueError(f"Build {build_id} is already queued or running")
            item = QueueItem(build_id, project_id, int(priority or 0), next(self._sequence))
            i = bisect.bisect_right(self._keys, item.sort_key)
            self._keys.insert(i, item.sort_key)
            self._waiting.insert(i, item)
            return item

    def remove(self, build_id):
        """Cancel a still-waiting item; False once it has started or is unknown."""
        with self._lock:
            i = self._index(build_id)
            if i == -1:
                return False
            del self._waiting[i]
            del self._keys[i]
            return True

    def position(self, build_id):
        with self._lock:
            return self._index(build_id)

    def positions(self):
        with self._lock:
            return {item.build_id: i for i, item in enumerate(self._waiting)}

    def peek(self):
        with self._lock:
            return self._waiting[0].build_id if self._waiting else None

    def try_admit(self):
        with self._lock:
            return self._has_slot()

    def start(self, build_id):
        """Move a waiting item into an active slot; exactly one racer wins the last slot."""
        with self._lock:
            i = self._index(build_id)
            if i == -1 or not self._has_slot():
                return False
            item = self._waiting.pop(i)
            del self._keys[i]
            item.started_at = time.time()
            self._active[build_id] = item
            return True

    def complete(self, build_id):
        """Release a build's slot; safe to call more than once."""
        with self._lock:
            return self._active.pop(build_id, None) is not None

    def active_count(self):
        with self._lock:
            return len(self._active)

    def set_max_concurrent(self, value):
        with self._lock:
            self.max_concurrent = max(1, int(value))

    def snapshot(self):
        now = time.time()
        with self._lock:
            return {
                "queue_length": len(self._waiting),
                "active_builds": len(self._active),
                "available_slots": max(0, self.max_concurrent - len(self._active)),
                "max_concurrent": self.max_concurrent,
                "queue": [
                    {
                        "build_id": item.build_id,
                        "project_id": item.project_id,
                        "priority": item.priority,
                        "waiting_time": round(now - item.created_at, 3),
                    }
                    for item in self._waiting
                ],
            }
