import sys
import threading
import time

import pytest

from builds.exceptions import BuildCancelled, CommandFailed, CommandTimeout
from builds.runner import CancellationToken, CommandRunner, format_command, redact_text


def py(code):
    return [sys.executable, "-c", code]


@pytest.fixture
def runner():
    return CommandRunner(timeout=30)


def test_successful_command_captures_output(runner, tmp_path, recording_log):
    result = runner.run(tmp_path, py("import os; print(os.getcwd())"), log=recording_log)

    assert result.returncode == 0
    assert result.stdout.strip() == str(tmp_path)
    assert recording_log.messages("info")[0].startswith("Running: ")


def test_nonzero_exit_raises_with_output(runner, tmp_path, recording_log):
    code = "import sys; sys.stderr.write(('bo' + 'om\\n') * 50); sys.exit(3)"
    with pytest.raises(CommandFailed) as excinfo:
        runner.run(tmp_path, py(code), log=recording_log)

    assert excinfo.value.returncode == 3
    assert "boom" in excinfo.value.stderr
    errors = recording_log.messages("error")
    assert len(errors) == 1
    # Only the head of the output goes to the build log.
    assert errors[0].count("boom") == 20


def test_failure_summary_on_stdout_reaches_the_log(runner, tmp_path, recording_log):
    code = (
        "import sys; print('> Task :app:compileReleaseJava'); "
        "sys.stderr.write('warning: deprecated API\\n'); "
        "print(('\\n' * 40) + 'FAIL' + 'URE: compile error'); sys.exit(1)"
    )
    with pytest.raises(CommandFailed) as excinfo:
        runner.run(tmp_path, py(code), log=recording_log)

    assert "FAILURE: compile error" in excinfo.value.output
    assert "warning: deprecated API" in excinfo.value.output
    [error] = recording_log.messages("error")
    assert "warning: deprecated API" in error
    assert "FAILURE: compile error" in error


def test_timeout_kills_the_command(tmp_path):
    runner = CommandRunner(timeout=0.5)
    started = time.monotonic()
    with pytest.raises(CommandTimeout):
        runner.run(tmp_path, py("import time; time.sleep(30)"))
    assert time.monotonic() - started < 10


def test_output_is_truncated_to_tail(runner, tmp_path):
    code = "print('a' * 5000); print('END')"
    result = runner.run(tmp_path, py(code), max_output_bytes=100)

    assert "bytes truncated" in result.stdout
    assert result.stdout.rstrip().endswith("END")
    assert len(result.stdout) < 200


def test_stderr_warnings_are_logged(runner, tmp_path, recording_log):
    code = "import sys; sys.stderr.write('Warning: deprecated API\\nplain line\\n')"
    runner.run(tmp_path, py(code), log=recording_log)
    assert recording_log.messages("warn") == ["Warning: deprecated API"]


def test_missing_program(runner, tmp_path, recording_log):
    with pytest.raises(CommandFailed) as excinfo:
        runner.run(tmp_path, ["definitely-not-a-build-tool-xyz"], log=recording_log)
    assert excinfo.value.returncode == 127
    assert recording_log.messages("error")


def test_secrets_are_redacted_from_logs(runner, tmp_path, recording_log):
    runner.run(tmp_path, py("pass") + ["--password", "hunter2"], log=recording_log, redact=("hunter2",))
    logged = " ".join(recording_log.messages())
    assert "hunter2" not in logged
    assert "****" in logged


def test_environment_is_merged(tmp_path):
    runner = CommandRunner(env={"BASE_VAR": "base"})
    code = "import os; print(os.environ['BASE_VAR'], os.environ['EXTRA_VAR'])"
    result = runner.run(tmp_path, py(code), env={"EXTRA_VAR": "extra"})
    assert result.stdout.split() == ["base", "extra"]


def test_cancelled_token_stops_a_running_command(runner, tmp_path):
    token = CancellationToken(kill_grace=1)
    threading.Timer(0.3, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(BuildCancelled):
        runner.run(tmp_path, py("import time; time.sleep(30)"), token=token)
    assert time.monotonic() - started < 10


def test_cancelled_token_prevents_start(runner, tmp_path, recording_log):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(BuildCancelled):
        runner.run(tmp_path, py("pass"), log=recording_log, token=token)
    assert recording_log.entries == []


def test_format_command_quotes_and_redacts():
    assert format_command(["echo", "a b", "secret"], ("secret",)) == "echo 'a b' ****"
    assert redact_text("pass:abc", ("abc", "")) == "pass:****"
