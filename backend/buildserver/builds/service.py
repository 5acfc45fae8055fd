import logging
import threading
import time
from pathlib import Path

from .exceptions import (
    ArtifactNotReady,
    BuildCancelled,
    BuildNotFound,
    BuildServerError,
    InvalidStateError,
    ValidationError,
)
from .models import BUILDING, QUEUED, SUCCESS, BuildJob, new_build_id
from .pipelines import PIPELINES, build_and_sign
from .runner import CancellationToken
from .storage import remove_file, safe_relative_path
from .store import BuildLogger

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5
DEFAULT_RETENTION = 24 * 60 * 60
DEFAULT_SWEEP_INTERVAL = 60 * 60
DEFAULT_TIME_LIMIT = 2 * 60 * 60
RECENT_BUILDS_LIMIT = 100


def normalize_files(files):
    """Accept (path, content) pairs or {"path", "content"} dicts; validate every path."""
    normalized = []
    for entry in files or ():
        if isinstance(entry, dict):
            path, content = entry.get("path"), entry.get("content", "")
        else:
            path, content = entry
        if content is None:
            content = ""
        safe_relative_path(path)
        normalized.append((str(path), str(content)))
    return normalized


class BuildService:
    """Submission, scheduling and execution of builds.

    A single scheduler thread admits waiting builds whenever the queue has a
    free slot and hands each admitted build to ``dispatch`` (a dramatiq actor in
    the server, a plain thread by default).
    """

    def __init__(
        self,
        store,
        queue,
        workspace,
        runner,
        signer,
        pipelines=None,
        dispatch=None,
        poll_interval=DEFAULT_POLL_INTERVAL,
        command_timeout=None,
        retention=DEFAULT_RETENTION,
        sweep_interval=DEFAULT_SWEEP_INTERVAL,
        time_limit=DEFAULT_TIME_LIMIT,
    ):
        self.store = store
        self.queue = queue
        self.workspace = workspace
        self.runner = runner
        self.signer = signer
        self.pipelines = pipelines if pipelines is not None else PIPELINES
        self.dispatch = dispatch or self._dispatch_thread
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout
        self.retention = retention
        self.sweep_interval = sweep_interval
        self.time_limit = time_limit

        self._tokens = {}
        self._tokens_lock = threading.Lock()
        self._wakeup = threading.Condition()
        self._signalled = False
        self._stopping = threading.Event()
        self._thread = None
        self._last_sweep = time.monotonic()

    # ---- Lifecycle ----
    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self.workspace.ensure_dirs()
        self._thread = threading.Thread(target=self._schedule_loop, name="build-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        self._stopping.set()
        self._notify()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def _notify(self):
        with self._wakeup:
            self._signalled = True
            self._wakeup.notify_all()

    # ---- Submission ----
    def validate(self, project_id, project_name, framework, files, build_config=None):
        if not str(project_id or "").strip():
            raise ValidationError("project_id is required")
        if not str(project_name or "").strip():
            raise ValidationError("project_name is required")
        if framework not in self.pipelines:
            supported = ", ".join(sorted(self.pipelines))
            raise ValidationError(f"Unsupported framework: {framework} (expected one of {supported})")
        if build_config is not None and not isinstance(build_config, dict):
            raise ValidationError("build_config must be an object")
        env = (build_config or {}).get("env")
        if env is not None and not isinstance(env, dict):
            raise ValidationError("build_config.env must be an object")
        files = normalize_files(files)
        if not files:
            raise ValidationError("At least one file is required")
        return files

    def submit(self, project_id, project_name, framework, files, build_config=None, priority=0):
        """Create a build record, stage its sources and queue it. Returns the build id."""
        files = self.validate(project_id, project_name, framework, files, build_config)
        try:
            priority = int(priority or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid priority: {priority!r}") from e

        job = BuildJob(
            build_id=new_build_id(),
            project_id=str(project_id),
            project_name=str(project_name),
            framework=framework,
            build_config=dict(build_config or {}),
            priority=priority,
        )
        build_id = job.build_id
        self.store.create(job, message="Build request received")

        try:
            self.workspace.stage_files(build_id, files)
        except BuildServerError as e:
            logger.error(f"Staging failed for build {build_id}: {e}")
            self.store.fail(build_id, str(e))
            return build_id

        self.store.transition(build_id, QUEUED, message="Build queued")
        self.queue.enqueue(build_id, job.project_id, priority)
        logger.info(f"Build {build_id} queued for project {job.project_id} ({framework}, priority={priority})")
        self._notify()
        return build_id

    # ---- Queries ----
    def get_status(self, build_id):
        return self.store.get(build_id)

    def list_builds(self, limit=RECENT_BUILDS_LIMIT):
        return self.store.list(limit=limit)

    def queue_snapshot(self):
        return self.queue.snapshot()

    def get_artifact(self, build_id):
        """Return (snapshot, path) of a successful build's signed APK."""
        job = self.store.get(build_id)
        if job.status != SUCCESS or not job.artifact_path:
            raise ArtifactNotReady(f"APK not available: build is {job.status}")
        path = Path(job.artifact_path)
        if not path.is_file():
            raise ArtifactNotReady("APK file not found")
        return job, path

    # ---- Live updates ----
    def subscribe(self, build_id, observer):
        """Subscribe ``observer`` and return the current snapshot.

        Observers of a build that is already terminal are not registered.
        """
        return self.store.subscribe(build_id, observer)

    def unsubscribe(self, build_id, observer):
        return self.store.broadcaster.unsubscribe(build_id, observer)

    # ---- Cancellation ----
    def cancel(self, build_id):
        previous, snapshot = self.store.cancel(build_id)
        if previous == QUEUED:
            self.queue.remove(build_id)
            logger.info(f"Build {build_id} cancelled while queued")
        else:
            with self._tokens_lock:
                token = self._tokens.get(build_id)
            if token is not None:
                token.cancel()
            logger.info(f"Build {build_id} cancelled while building")
        self._notify()
        return snapshot

    # ---- Retention ----
    def cleanup_old_builds(self, max_age=None):
        evicted = self.store.evict_terminal(self.retention if max_age is None else max_age)
        for job in evicted:
            self.workspace.remove_build(job.build_id, job.artifact_path)
            logger.info(f"Cleaned up old build: {job.build_id}")
        return len(evicted)

    def _maybe_sweep(self):
        if not self.sweep_interval:
            return
        now = time.monotonic()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        try:
            self.cleanup_old_builds()
        except Exception:
            logger.exception("Retention sweep failed")

    # ---- Scheduling ----
    def _schedule_loop(self):
        logger.info(f"Build scheduler started (max concurrent builds: {self.queue.max_concurrent})")
        while not self._stopping.is_set():
            try:
                if self._admit_next():
                    continue
                self._maybe_sweep()
            except Exception:
                logger.exception("Scheduler iteration failed")
            with self._wakeup:
                self._wakeup.wait_for(lambda: self._signalled or self._stopping.is_set(), timeout=self.poll_interval)
                self._signalled = False
        logger.info("Build scheduler stopped")

    def _report_positions(self):
        for build_id, position in self.queue.positions().items():
            try:
                self.store.set_queue_position(build_id, position)
            except BuildNotFound:
                self.queue.remove(build_id)

    def _admit_next(self):
        """Start the head of the queue if a slot is free; True when a build was taken off the queue."""
        self._report_positions()
        build_id = self.queue.peek()
        if build_id is None or not self.queue.try_admit():
            return False
        if not self.queue.start(build_id):
            return False

        with self._tokens_lock:
            self._tokens[build_id] = CancellationToken()
        try:
            self.store.transition(build_id, BUILDING, message="Build started")
        except (InvalidStateError, BuildNotFound):
            # Cancelled between peek and start.
            self._release(build_id)
            return True

        try:
            self.dispatch(build_id)
        except Exception as e:
            logger.exception(f"Could not dispatch build {build_id}")
            self._fail(build_id, f"Could not dispatch build: {e}")
            self._release(build_id)
        return True

    def _dispatch_thread(self, build_id):
        thread = threading.Thread(target=self.run_admitted, args=(build_id,), name=f"build-{build_id[:8]}", daemon=True)
        thread.start()

    def _release(self, build_id):
        with self._tokens_lock:
            self._tokens.pop(build_id, None)
        self.queue.complete(build_id)
        self._notify()

    def _fail(self, build_id, error_message):
        try:
            self.store.fail(build_id, error_message)
        except InvalidStateError:
            # Already terminal, e.g. cancelled while the step was running.
            pass
        except BuildNotFound:
            logger.warning(f"Build {build_id} no longer exists, dropping error: {error_message}")

    # ---- Execution ----
    def run_admitted(self, build_id):
        """Execute an admitted build to a terminal state and release its slot."""
        with self._tokens_lock:
            token = self._tokens.setdefault(build_id, CancellationToken())
        log = BuildLogger(self.store, build_id)
        artifact = None
        deadline = None
        if self.time_limit:
            deadline = threading.Timer(self.time_limit, self._expire, args=(build_id, token))
            deadline.daemon = True
            deadline.start()
        try:
            job = self.store.get(build_id)
            if job.status != BUILDING:
                return
            pipeline = self.pipelines[job.framework]
            output_path = self.workspace.get_artifact_path(job.project_name, build_id)
            artifact = build_and_sign(
                pipeline,
                self.workspace.get_build_path(build_id),
                self.runner,
                self.signer,
                log,
                job.project_id,
                output_path,
                token=token,
                env=job.build_config.get("env"),
                timeout=self.command_timeout,
            )
            try:
                self.store.transition(
                    build_id,
                    SUCCESS,
                    message="Build completed successfully!",
                    artifact_path=str(artifact),
                    artifact_url=f"/api/builds/{build_id}/download/",
                )
            except InvalidStateError:
                logger.info(f"Build {build_id} was cancelled during signing, discarding {artifact}")
                remove_file(artifact)
                return
            logger.info(f"Build {build_id} finished: {artifact}")
        except BuildCancelled:
            logger.info(f"Build {build_id} stopped after cancellation")
            self._fail(build_id, "Build cancelled by user")
        except BuildServerError as e:
            logger.warning(f"Build {build_id} failed: {e}")
            self._fail(build_id, str(e))
        except Exception as e:
            logger.exception(f"Unhandled exception in build {build_id}")
            self._fail(build_id, f"Unexpected error: {e}")
        finally:
            if deadline is not None:
                deadline.cancel()
            self._ensure_terminal(build_id)
            self._release(build_id)

    def _expire(self, build_id, token):
        try:
            self.store.fail(build_id, f"Build exceeded time limit of {self.time_limit}s")
        except (InvalidStateError, BuildNotFound):
            return
        logger.warning(f"Build {build_id} exceeded its time limit, stopping it")
        token.cancel()

    def _ensure_terminal(self, build_id):
        # The record must be final before the slot is handed to the next build.
        try:
            job = self.store.get(build_id)
        except BuildNotFound:
            return
        if not job.is_terminal:
            self._fail(build_id, "Build interrupted")
