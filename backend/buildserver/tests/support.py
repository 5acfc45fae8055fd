import threading
import time
from pathlib import Path

from builds.exceptions import BuildCancelled, CommandFailed
from builds.runner import CommandResult, format_command

REACT_NATIVE_FILES = [
    {"path": "package.json", "content": '{"name": "demo"}'},
    {"path": "index.js", "content": "import {AppRegistry} from 'react-native';"},
    {"path": "android/gradlew", "content": "#!/bin/sh\n"},
]
FLUTTER_FILES = [
    {"path": "pubspec.yaml", "content": "name: demo\n"},
    {"path": "lib/main.dart", "content": "void main() {}\n"},
]
CAPACITOR_FILES = [
    {"path": "package.json", "content": '{"name": "demo"}'},
    {"path": "capacitor.config.json", "content": "{}"},
    {"path": "android/gradlew", "content": "#!/bin/sh\n"},
]


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    raise AssertionError("condition not met within timeout")


class RecordingLog:
    """Minimal BuildLogger stand-in collecting (level, message) pairs."""

    def __init__(self):
        self.entries = []
        self.progress_values = []

    def info(self, message):
        self.entries.append(("info", message))

    def warn(self, message):
        self.entries.append(("warn", message))

    def error(self, message):
        self.entries.append(("error", message))

    def success(self, message):
        self.entries.append(("success", message))

    def progress(self, value, message=None):
        self.progress_values.append(value)
        if message:
            self.info(message)

    def messages(self, level=None):
        return [m for lvl, m in self.entries if level is None or lvl == level]


class FakeToolchain:
    """Scripted replacement for CommandRunner.

    Emulates the external tools on disk: gradle and flutter produce an unsigned
    APK, keytool writes a keystore, zipalign prefixes ``ALIGNED``, apksigner
    prefixes ``SIGNED:<alias>`` and verification checks both markers.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.gates = {}
        self._lock = threading.Lock()

    # ---- Scripting ----
    def fail_on(self, prefix, returncode=1, stderr="error: step failed"):
        self.failures[prefix] = (returncode, stderr)

    def block_on(self, prefix):
        gate = threading.Event()
        self.gates[prefix] = gate
        return gate

    def release_all(self):
        for gate in self.gates.values():
            gate.set()

    def commands(self):
        with self._lock:
            return [" ".join(command) for _, command in self.calls]

    def calls_in(self, directory):
        directory = Path(directory)
        with self._lock:
            return [" ".join(command) for cwd, command in self.calls if directory == cwd or directory in cwd.parents]

    @staticmethod
    def _match(table, joined):
        for prefix, value in table.items():
            if joined.startswith(prefix):
                return value
        return None

    # ---- CommandRunner interface ----
    def run(self, cwd, command, timeout=None, max_output_bytes=None, env=None, log=None, token=None, redact=()):
        command = [str(part) for part in command]
        joined = " ".join(command)
        if token is not None:
            token.raise_if_cancelled()
        if log is not None:
            log.info(f"Running: {format_command(command, redact)}")
        with self._lock:
            self.calls.append((Path(cwd), command))

        gate = self._match(self.gates, joined)
        if gate is not None:
            while not gate.wait(0.01):
                if token is not None and token.cancelled:
                    raise BuildCancelled()
        if token is not None and token.cancelled:
            raise BuildCancelled()

        failure = self._match(self.failures, joined)
        if failure is not None:
            returncode, stderr = failure
            if log is not None:
                log.error(f"{joined} failed:\n{stderr}")
            raise CommandFailed(f"Command failed with exit code {returncode}: {joined}", command, returncode, "", stderr)

        self._emulate(Path(cwd), command)
        return CommandResult(command, 0, "", "", 0.0)

    def _emulate(self, cwd, command):
        program = command[0]
        if command[:3] == ["sh", "gradlew", "assembleRelease"]:
            _write(cwd / "app/build/outputs/apk/release/app-release-unsigned.apk", b"APK\n")
        elif command[:3] == ["flutter", "build", "apk"]:
            _write(cwd / "build/app/outputs/flutter-apk/app-release.apk", b"APK\n")
        elif program == "keytool":
            path = Path(_option(command, "-keystore"))
            _write(path, f"KEYSTORE {_option(command, '-alias')}\n".encode())
        elif program == "zipalign" and "-c" in command:
            data = Path(command[-1]).read_bytes()
            header, _, body = data.partition(b"\n")
            if not (header.startswith(b"SIGNED:") and body.startswith(b"ALIGNED\n")):
                raise CommandFailed("Verification FAILED: not aligned", command, 1, "", "Verification FAILED")
        elif program == "zipalign":
            source, target = Path(command[-2]), Path(command[-1])
            _write(target, b"ALIGNED\n" + source.read_bytes())
        elif command[:2] == ["apksigner", "sign"]:
            source, target = Path(command[-1]), Path(_option(command, "--out"))
            alias = _option(command, "--ks-key-alias")
            keystore = Path(_option(command, "--ks"))
            if not keystore.is_file():
                raise CommandFailed("keystore missing", command, 1, "", "Failed to load signer")
            _write(target, f"SIGNED:{alias}:{keystore}\n".encode() + source.read_bytes())
        elif command[:2] == ["apksigner", "verify"]:
            if not Path(command[-1]).read_bytes().startswith(b"SIGNED:"):
                raise CommandFailed("DOES NOT VERIFY", command, 1, "", "ERROR: APK Signature Scheme v2 signer #1: DOES NOT VERIFY")


def _option(command, name):
    return command[command.index(name) + 1]


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def submit(service, project_id="proj-1", project_name="Demo App", framework="react-native", files=None, **kwargs):
    if files is None:
        files = {"react-native": REACT_NATIVE_FILES, "flutter": FLUTTER_FILES, "capacitor": CAPACITOR_FILES}[framework]
    return service.submit(project_id, project_name, framework, files, **kwargs)


def wait_terminal(service, build_id, timeout=5.0):
    wait_for(lambda: service.get_status(build_id).is_terminal, timeout=timeout)
    return service.get_status(build_id)
