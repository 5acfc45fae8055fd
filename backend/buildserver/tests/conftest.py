import pytest

from builds.broadcaster import StatusBroadcaster
from builds.build_queue import BuildQueue
from builds.keystore import FileKeystoreRepository, KeystoreManager
from builds.service import BuildService
from builds.signing import SigningPipeline
from builds.storage import Workspace
from builds.store import BuildRecordStore, InMemoryBuildRepository

from .support import FakeToolchain, RecordingLog


@pytest.fixture
def toolchain():
    fake = FakeToolchain()
    yield fake
    fake.release_all()


@pytest.fixture
def recording_log():
    return RecordingLog()


@pytest.fixture
def keystore_manager(tmp_path, toolchain):
    return KeystoreManager(toolchain, FileKeystoreRepository(tmp_path / "keystores"))


@pytest.fixture
def make_service(tmp_path, toolchain):
    services = []

    def factory(max_concurrent=3, start=True, **kwargs):
        store = BuildRecordStore(InMemoryBuildRepository(), StatusBroadcaster())
        keystores = KeystoreManager(toolchain, FileKeystoreRepository(tmp_path / "keystores"))
        kwargs.setdefault("poll_interval", 0.05)
        kwargs.setdefault("sweep_interval", 0)
        service = BuildService(
            store,
            BuildQueue(max_concurrent),
            Workspace(tmp_path / "builds", tmp_path / "apks"),
            toolchain,
            SigningPipeline(toolchain, keystores),
            **kwargs,
        )
        if start:
            service.start()
        services.append(service)
        return service

    yield factory
    toolchain.release_all()
    for service in services:
        service.stop(timeout=5)
