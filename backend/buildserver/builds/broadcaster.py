import logging
import threading

logger = logging.getLogger(__name__)

MESSAGE_TYPE = "build_update"


class _Channel:
    def __init__(self):
        # observer -> version of the last snapshot it has seen
        self.observers = {}
        self.latest = None
        self.delivering = False


class StatusBroadcaster:
    """Fan-out of build snapshots to the observers subscribed to a build id.

    Observers are plain callables receiving one message dict:
    ``{"type": "build_update", "projectId": ..., "buildId": ..., "build": <BuildJob>}``.

    Snapshots carry the store's version counter. Each observer only ever gets
    versions newer than the last one it saw, delivered by one thread at a time
    per build, so publishers racing outside the store lock cannot reorder
    updates. A publisher that finds delivery in progress leaves its snapshot
    for the active deliverer, which always sends the newest one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._channels = {}

    def subscribe(self, build_id, observer, version=None):
        """Register ``observer``; ``version`` is the snapshot it already holds."""
        with self._lock:
            channel = self._channels.get(build_id)
            if channel is None:
                channel = self._channels[build_id] = _Channel()
            channel.observers[observer] = -1 if version is None else version

    def unsubscribe(self, build_id, observer):
        with self._lock:
            channel = self._channels.get(build_id)
            if channel is None or observer not in channel.observers:
                return False
            del channel.observers[observer]
            self._release(build_id, channel)
            return True

    def observer_count(self, build_id):
        with self._lock:
            channel = self._channels.get(build_id)
            return len(channel.observers) if channel is not None else 0

    def _release(self, build_id, channel):
        # Caller holds self._lock.
        if not channel.observers and not channel.delivering and self._channels.get(build_id) is channel:
            del self._channels[build_id]

    def publish(self, build_id, project_id, build):
        with self._lock:
            channel = self._channels.get(build_id)
            if channel is None:
                return 0
            if channel.latest is None or build.version > channel.latest["build"].version:
                channel.latest = {
                    "type": MESSAGE_TYPE,
                    "projectId": project_id,
                    "buildId": build_id,
                    "build": build,
                }
            if channel.delivering:
                return 0
            channel.delivering = True

        delivered = 0
        try:
            while True:
                with self._lock:
                    message = channel.latest
                    version = message["build"].version
                    targets = [o for o, seen in channel.observers.items() if seen < version]
                    if not targets:
                        channel.delivering = False
                        self._release(build_id, channel)
                        return delivered
                    if message["build"].is_terminal:
                        # A terminal snapshot is the last message a subscriber gets.
                        channel.observers.clear()
                    else:
                        for observer in targets:
                            channel.observers[observer] = version

                for observer in targets:
                    try:
                        observer(message)
                        delivered += 1
                    except Exception:
                        logger.exception(f"Observer failed for build {build_id}, unsubscribing")
                        with self._lock:
                            channel.observers.pop(observer, None)
        finally:
            with self._lock:
                if channel.delivering:
                    channel.delivering = False
                    self._release(build_id, channel)
