import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass

from .exceptions import BuildCancelled, CommandFailed, CommandTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1800
DEFAULT_MAX_OUTPUT_BYTES = 256 * 1024
ERROR_LOG_LINES = 20
MAX_WARNING_LINES = 20
KILL_GRACE = 5
MASK = "****"


@dataclass
class CommandResult:
    command: list
    returncode: int
    stdout: str
    stderr: str
    duration: float


def redact_text(text, secrets):
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


def format_command(command, secrets=()):
    return redact_text(shlex.join(command), secrets)


def read_tail(handle, limit):
    """Decode at most ``limit`` trailing bytes of a captured stream."""
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    skipped = max(0, size - limit)
    handle.seek(skipped)
    text = handle.read().decode("utf-8", errors="replace")
    if skipped:
        text = f"[... {skipped} bytes truncated ...]\n{text}"
    return text


def signal_process_group(process, sig):
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f"Cannot signal process group {process.pid}: {e}")


class CancellationToken:
    """Cooperative cancel flag that can also stop the command currently running."""

    def __init__(self, kill_grace=KILL_GRACE):
        self.kill_grace = kill_grace
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._process = None

    @property
    def cancelled(self):
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise BuildCancelled()

    def cancel(self):
        self._event.set()
        with self._lock:
            process = self._process
        if process is not None:
            self._terminate(process)

    def attach(self, process):
        """Register the running process; returns False if the token was already cancelled."""
        with self._lock:
            self._process = process
        if self._event.is_set():
            self._terminate(process)
            return False
        return True

    def detach(self, process):
        with self._lock:
            if self._process is process:
                self._process = None

    def _terminate(self, process):
        if process.poll() is not None:
            return
        logger.info(f"Terminating process group {process.pid}")
        signal_process_group(process, signal.SIGTERM)
        timer = threading.Timer(self.kill_grace, self._kill_if_alive, args=(process,))
        timer.daemon = True
        timer.start()

    @staticmethod
    def _kill_if_alive(process):
        if process.poll() is None:
            signal_process_group(process, signal.SIGKILL)


class CommandRunner:
    """Runs one external program with a timeout and bounded captured output."""

    def __init__(self, env=None, timeout=DEFAULT_TIMEOUT, max_output_bytes=DEFAULT_MAX_OUTPUT_BYTES):
        self.env = dict(env or {})
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def build_env(self, extra=None):
        merged = dict(os.environ)
        merged.update(self.env)
        if extra:
            merged.update({str(k): str(v) for k, v in extra.items()})
        return merged

    def run(self, cwd, command, timeout=None, max_output_bytes=None, env=None, log=None, token=None, redact=()):
        command = [str(part) for part in command]
        display = format_command(command, redact)
        timeout = timeout or self.timeout
        limit = max_output_bytes or self.max_output_bytes

        if token is not None:
            token.raise_if_cancelled()
        if log is not None:
            log.info(f"Running: {display}")
        logger.debug(f"RUN: {display} (cwd={cwd})")

        started = time.monotonic()
        timed_out = False
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                process = subprocess.Popen(
                    command,
                    cwd=str(cwd),
                    env=self.build_env(env),
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
            except FileNotFoundError as e:
                error = CommandFailed(f"Command not found: {command[0]}", command, 127, "", str(e))
                self._log_failure(log, display, error, redact)
                raise error from e
            except OSError as e:
                error = CommandFailed(f"Cannot execute {command[0]}: {e}", command, 126, "", str(e))
                self._log_failure(log, display, error, redact)
                raise error from e

            if token is not None and not token.attach(process):
                process.wait()
                raise BuildCancelled()
            try:
                returncode = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                signal_process_group(process, signal.SIGKILL)
                returncode = process.wait()
            except BaseException:
                signal_process_group(process, signal.SIGKILL)
                process.wait()
                raise
            finally:
                if token is not None:
                    token.detach(process)

            stdout = read_tail(out, limit)
            stderr = read_tail(err, limit)

        result = CommandResult(command, returncode, stdout, stderr, time.monotonic() - started)

        if token is not None and token.cancelled:
            raise BuildCancelled()
        if timed_out:
            error = CommandTimeout(f"Command timed out after {timeout}s: {display}", command, returncode, stdout, stderr)
        elif returncode != 0:
            error = CommandFailed(f"Command failed with exit code {returncode}: {display}", command, returncode, stdout, stderr)
        else:
            self._log_warnings(log, stderr, redact)
            return result

        self._log_failure(log, display, error, redact)
        raise error

    @staticmethod
    def _log_failure(log, display, error, redact):
        logger.warning(f"{error} ({len(error.output)} chars of output)")
        if log is None:
            return
        # Tools put the cause at the top of stderr; gradle and flutter print
        # their FAILURE summary at the end of stdout.
        lines = redact_text(error.stderr, redact).strip().splitlines()[:ERROR_LOG_LINES]
        lines += redact_text(error.stdout, redact).strip().splitlines()[-ERROR_LOG_LINES:]
        detail = "\n".join(lines) if lines else "(no output)"
        log.error(f"{display} failed:\n{detail}")

    @staticmethod
    def _log_warnings(log, stderr, redact):
        if log is None or not stderr:
            return
        warnings = [line.strip() for line in stderr.splitlines() if "warning" in line.lower()]
        for line in warnings[:MAX_WARNING_LINES]:
            log.warn(redact_text(line, redact))
