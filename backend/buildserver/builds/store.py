import logging
import threading
from datetime import timedelta

from .exceptions import BuildNotFound, InvalidStateError
from .models import (
    ACTIVE_STATUSES,
    BUILDING,
    FAILED,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_SUCCESS,
    LEVEL_WARN,
    LogEntry,
    QUEUED,
    SUCCESS,
    TRANSITIONS,
    cap_message,
    utcnow,
)

logger = logging.getLogger(__name__)

BUILDING_PROGRESS = 5


class BuildRepository:
    """Arena of BuildJob objects keyed by build id."""

    def add(self, job):
        raise NotImplementedError

    def get(self, build_id):
        raise NotImplementedError

    def save(self, job):
        raise NotImplementedError

    def remove(self, build_id):
        raise NotImplementedError

    def all(self):
        raise NotImplementedError


class InMemoryBuildRepository(BuildRepository):
    def __init__(self):
        self._jobs = {}
        self._lock = threading.Lock()

    def add(self, job):
        with self._lock:
            if job.build_id in self._jobs:
                raise ValueError(f"Duplicate build id {job.build_id}")
            self._jobs[job.build_id] = job

    def get(self, build_id):
        with self._lock:
            return self._jobs.get(build_id)

    def save(self, job):
        # Jobs are mutated in place; nothing to write back.
        pass

    def remove(self, build_id):
        with self._lock:
            return self._jobs.pop(build_id, None)

    def all(self):
        with self._lock:
            return list(self._jobs.values())


class BuildRecordStore:
    """Single owner of BuildJob state.

    Every mutation runs under the build's own lock and bumps the job's version.
    The resulting snapshot is published once that lock has been released.
    """

    def __init__(self, repository=None, broadcaster=None):
        self.repository = repository if repository is not None else InMemoryBuildRepository()
        self.broadcaster = broadcaster
        self._locks = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, build_id):
        with self._locks_guard:
            lock = self._locks.get(build_id)
            if lock is None:
                lock = self._locks[build_id] = threading.RLock()
            return lock

    def _load(self, build_id):
        job = self.repository.get(build_id)
        if job is None:
            raise BuildNotFound(build_id)
        return job

    def _commit(self, job):
        job.version += 1
        self.repository.save(job)
        return job.snapshot()

    def _publish(self, snapshot):
        # Runs after the build lock is released; the broadcaster orders by version.
        if snapshot is not None and self.broadcaster is not None:
            self.broadcaster.publish(snapshot.build_id, snapshot.project_id, snapshot)
        return snapshot

    @staticmethod
    def _append(job, level, message):
        now = utcnow()
        # Keep a build's own log strictly time-ordered even if the clock steps back.
        if job.logs and job.logs[-1].timestamp > now:
            now = job.logs[-1].timestamp
        job.logs.append(LogEntry(timestamp=now, level=level, message=cap_message(message)))

    # ---- Reads ----
    def get(self, build_id):
        with self._lock_for(build_id):
            return self._load(build_id).snapshot()

    def exists(self, build_id):
        return self.repository.get(build_id) is not None

    def list(self, limit=None):
        jobs = sorted(self.repository.all(), key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        snapshots = []
        for job in jobs:
            with self._lock_for(job.build_id):
                snapshots.append(job.snapshot())
        return snapshots

    def count_by_status(self, status):
        return sum(1 for job in self.repository.all() if job.status == status)

    def subscribe(self, build_id, observer):
        """Return the current snapshot and register ``observer`` for later versions.

        Both happen under the build lock so no update falls between them.
        Finished builds get no subscription.
        """
        with self._lock_for(build_id):
            snapshot = self._load(build_id).snapshot()
            if not snapshot.is_terminal and self.broadcaster is not None:
                self.broadcaster.subscribe(build_id, observer, version=snapshot.version)
            return snapshot

    # ---- Mutations ----
    def create(self, job, message=None):
        with self._lock_for(job.build_id):
            self.repository.add(job)
            if message:
                self._append(job, LEVEL_INFO, message)
            snapshot = self._commit(job)
        return self._publish(snapshot)

    def transition(self, build_id, status, message=None, level=None, **fields):
        """Move a build to ``status``; raises InvalidStateError for illegal edges."""
        with self._lock_for(build_id):
            snapshot = self._transition(self._load(build_id), status, message, level, fields)
        return self._publish(snapshot)

    def _transition(self, job, status, message, level, fields):
        if status not in TRANSITIONS[job.status]:
            raise InvalidStateError(f"Cannot move build {job.build_id} from {job.status} to {status}")

        job.status = status
        for name, value in fields.items():
            setattr(job, name, value)
        if status != QUEUED:
            job.queue_position = None
        if status == BUILDING:
            job.started_at = job.started_at or utcnow()
            job.progress = max(job.progress, BUILDING_PROGRESS)
        elif status in (SUCCESS, FAILED):
            job.completed_at = job.completed_at or utcnow()
            if status == SUCCESS:
                job.progress = 100
        if message:
            if level is None:
                level = {SUCCESS: LEVEL_SUCCESS, FAILED: LEVEL_ERROR}.get(status, LEVEL_INFO)
            self._append(job, level, message)
        return self._commit(job)

    def fail(self, build_id, error_message, message=None):
        return self.transition(
            build_id,
            FAILED,
            message=message or f"Build failed: {error_message}",
            error_message=error_message,
        )

    def cancel(self, build_id, reason="Build cancelled by user"):
        """Atomically flag and fail an active build; returns (previous status, snapshot)."""
        with self._lock_for(build_id):
            job = self._load(build_id)
            if job.status not in ACTIVE_STATUSES:
                raise InvalidStateError(f"Build {build_id} is {job.status} and cannot be cancelled")
            previous = job.status
            job.cancel_requested = True
            snapshot = self._transition(job, FAILED, "Build cancelled", None, {"error_message": reason})
        return previous, self._publish(snapshot)

    def append_log(self, build_id, level, message):
        """Append one entry; writes to a terminal build are dropped and return None."""
        with self._lock_for(build_id):
            job = self._load(build_id)
            if job.is_terminal:
                logger.debug(f"Dropping log line for finished build {build_id}: {message}")
                return None
            self._append(job, level, message)
            snapshot = self._commit(job)
        return self._publish(snapshot)

    def set_progress(self, build_id, progress, message=None):
        with self._lock_for(build_id):
            job = self._load(build_id)
            if job.is_terminal:
                return None
            job.progress = max(job.progress, min(100, int(progress)))
            if message:
                self._append(job, LEVEL_INFO, message)
            snapshot = self._commit(job)
        return self._publish(snapshot)

    def set_queue_position(self, build_id, position):
        """Record a waiting build's queue position, logging it only when it changed."""
        with self._lock_for(build_id):
            job = self._load(build_id)
            if job.status != QUEUED or job.queue_position == position:
                return None
            job.queue_position = position
            self._append(job, LEVEL_INFO, f"Build queued (position: {position + 1})")
            snapshot = self._commit(job)
        return self._publish(snapshot)

    # ---- Retention ----
    def list_terminal(self, older_than):
        cutoff = utcnow() - _as_timedelta(older_than)
        return [
            job.snapshot()
            for job in self.repository.all()
            if job.is_terminal and job.created_at < cutoff
        ]

    def evict_terminal(self, older_than):
        evicted = []
        for candidate in self.list_terminal(older_than):
            with self._lock_for(candidate.build_id):
                job = self.repository.get(candidate.build_id)
                if job is None or not job.is_terminal:
                    continue
                self.repository.remove(job.build_id)
                evicted.append(job.snapshot())
            with self._locks_guard:
                self._locks.pop(candidate.build_id, None)
        return evicted


def _as_timedelta(value):
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class BuildLogger:
    """Build-scoped view of the store used by the runner and pipelines."""

    def __init__(self, store, build_id):
        self.store = store
        self.build_id = build_id

    def log(self, level, message):
        return self.store.append_log(self.build_id, level, message)

    def info(self, message):
        return self.log(LEVEL_INFO, message)

    def warn(self, message):
        return self.log(LEVEL_WARN, message)

    def error(self, message):
        return self.log(LEVEL_ERROR, message)

    def success(self, message):
        return self.log(LEVEL_SUCCESS, message)

    def progress(self, value, message=None):
        return self.store.set_progress(self.build_id, value, message)
