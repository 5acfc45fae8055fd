import logging
import os

from dramatiq import Worker

from .broadcaster import StatusBroadcaster
from .build_queue import BuildQueue
from .keystore import FileKeystoreRepository, KeystoreManager
from .models import DistinguishedName
from .runner import CommandRunner
from .service import BuildService
from .signing import SigningPipeline
from .storage import Workspace
from .store import BuildRecordStore, InMemoryBuildRepository

logger = logging.getLogger("build_worker")


def toolchain_env(conf):
    """Environment shared by every external command: SDK locations and tool directories on PATH."""
    env = {}
    android_home = conf.get("ANDROID_HOME")
    java_home = conf.get("JAVA_HOME")
    paths = []
    if conf.get("ANDROID_BUILD_TOOLS"):
        paths.append(conf["ANDROID_BUILD_TOOLS"])
    if android_home:
        env["ANDROID_HOME"] = android_home
        env["ANDROID_SDK_ROOT"] = android_home
        paths.append(os.path.join(android_home, "platform-tools"))
        paths.append(os.path.join(android_home, "cmdline-tools", "latest", "bin"))
    if conf.get("FLUTTER_HOME"):
        paths.append(os.path.join(conf["FLUTTER_HOME"], "bin"))
    if java_home:
        env["JAVA_HOME"] = java_home
        paths.append(os.path.join(java_home, "bin"))
    current = os.environ.get("PATH", "")
    env["PATH"] = os.pathsep.join(paths + ([current] if current else []))
    return env


def start_worker(broker, threads):
    """Run the dramatiq worker inside this process; one thread per concurrency slot."""
    from .tasks import BUILD_QUEUE

    worker = Worker(broker, queues={BUILD_QUEUE}, worker_threads=max(1, threads))
    worker.start()
    logger.info(f"Build worker started with {threads} threads")
    return worker


def create_build_service(conf, dispatch=None):
    """Wire a BuildService and its collaborators from a BUILD_SERVER settings dict."""
    broadcaster = StatusBroadcaster()
    store = BuildRecordStore(InMemoryBuildRepository(), broadcaster)
    queue = BuildQueue(conf.get("MAX_CONCURRENT", 3))
    workspace = Workspace(conf["BUILDS_DIR"], conf["APKS_DIR"])
    runner = CommandRunner(
        env=toolchain_env(conf),
        timeout=conf.get("COMMAND_TIMEOUT", 1800),
        max_output_bytes=conf.get("MAX_OUTPUT_BYTES", 256 * 1024),
    )
    keystores = KeystoreManager(
        runner,
        FileKeystoreRepository(conf["KEYSTORE_DIR"]),
        validity=conf.get("KEYSTORE_VALIDITY_DAYS", 10000),
        distinguished_name=DistinguishedName(**conf.get("KEYSTORE_DN", {})),
    )
    signer = SigningPipeline(runner, keystores)

    if dispatch is None and conf.get("USE_DRAMATIQ"):
        from .broker import broker
        from .tasks import execute_build

        start_worker(broker, queue.max_concurrent)
        dispatch = execute_build.send

    return BuildService(
        store,
        queue,
        workspace,
        runner,
        signer,
        dispatch=dispatch,
        poll_interval=conf.get("QUEUE_POLL_INTERVAL", 5),
        command_timeout=conf.get("COMMAND_TIMEOUT"),
        retention=conf.get("RETENTION", 24 * 60 * 60),
        sweep_interval=conf.get("RETENTION_SWEEP_INTERVAL", 60 * 60),
        time_limit=conf.get("TIME_LIMIT", 2 * 60 * 60),
    )
