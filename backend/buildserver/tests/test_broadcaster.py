import threading

from builds.broadcaster import StatusBroadcaster
from builds.models import BUILDING, FAILED, BuildJob


def job(version, status=BUILDING):
    return BuildJob(
        build_id="b1", project_id="p1", project_name="Demo", framework="flutter", status=status, version=version
    )


def test_publish_reaches_only_subscribers_of_that_build():
    broadcaster = StatusBroadcaster()
    mine, other = [], []
    broadcaster.subscribe("b1", mine.append)
    broadcaster.subscribe("b2", other.append)

    assert broadcaster.publish("b1", "p1", job(1)) == 1
    assert len(mine) == 1
    assert other == []
    assert mine[0]["type"] == "build_update"
    assert mine[0]["projectId"] == "p1"
    assert mine[0]["buildId"] == "b1"
    assert mine[0]["build"].status == BUILDING


def test_terminal_snapshot_releases_observers():
    broadcaster = StatusBroadcaster()
    received = []
    broadcaster.subscribe("b1", received.append)

    broadcaster.publish("b1", "p1", job(1, FAILED))
    broadcaster.publish("b1", "p1", job(2, FAILED))

    assert len(received) == 1
    assert broadcaster.observer_count("b1") == 0


def test_unsubscribe():
    broadcaster = StatusBroadcaster()
    received = []
    broadcaster.subscribe("b1", received.append)

    assert broadcaster.unsubscribe("b1", received.append)
    assert not broadcaster.unsubscribe("b1", received.append)
    assert broadcaster.publish("b1", "p1", job(1)) == 0
    assert received == []


def test_failing_observer_is_dropped_without_affecting_others():
    broadcaster = StatusBroadcaster()
    received = []

    def broken(message):
        raise RuntimeError("socket closed")

    broadcaster.subscribe("b1", broken)
    broadcaster.subscribe("b1", received.append)

    assert broadcaster.publish("b1", "p1", job(1)) == 1
    assert broadcaster.observer_count("b1") == 1
    broadcaster.publish("b1", "p1", job(2))
    assert len(received) == 2


def test_versions_at_or_below_the_subscribed_snapshot_are_skipped():
    broadcaster = StatusBroadcaster()
    received = []
    broadcaster.subscribe("b1", received.append, version=3)

    assert broadcaster.publish("b1", "p1", job(2)) == 0
    assert broadcaster.publish("b1", "p1", job(3)) == 0
    assert broadcaster.publish("b1", "p1", job(4)) == 1
    assert broadcaster.publish("b1", "p1", job(4)) == 0
    assert [m["build"].version for m in received] == [4]


def test_late_publish_of_an_older_version_is_dropped():
    broadcaster = StatusBroadcaster()
    received = []
    broadcaster.subscribe("b1", received.append)

    broadcaster.publish("b1", "p1", job(5))
    broadcaster.publish("b1", "p1", job(4))
    assert [m["build"].version for m in received] == [5]


def test_publishers_never_wait_on_a_slow_observer():
    broadcaster = StatusBroadcaster()
    entered, release = threading.Event(), threading.Event()
    received = []

    def slow(message):
        received.append(message["build"].version)
        entered.set()
        release.wait(5)

    broadcaster.subscribe("b1", slow)
    first = threading.Thread(target=broadcaster.publish, args=("b1", "p1", job(1)))
    first.start()
    try:
        assert entered.wait(5)
        later = threading.Thread(
            target=lambda: [broadcaster.publish("b1", "p1", job(v)) for v in (2, 3)]
        )
        later.start()
        later.join(1)
        assert not later.is_alive()
    finally:
        release.set()
    first.join(5)

    # The delivering thread picks up the newest snapshot once the observer returns.
    assert received == [1, 3]
