"""Tests for local process execution."""

import os
from datetime import timedelta
from pathlib import Path

import pytest

from node_agent.process import ExecuteResult, ProcessExecutor, get_bash_command_line

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/bash"), reason="requires /bin/bash")


@pytest.fixture
def process_executor() -> ProcessExecutor:
    """Create a process executor."""
    return ProcessExecutor()


def write_script(folder: Path, body: str) -> Path:
    script = folder / "task.sh"
    script.write_text(body)
    return script


class TestExecuteCapture:
    """Tests for execute_capture."""

    async def test_captures_output(self, process_executor: ProcessExecutor) -> None:
        """Test stdout and the exit code are captured."""
        result = await process_executor.execute_capture("echo", ["hello", 42])

        assert result == ExecuteResult(exit_code=0, output_text="hello 42\n", error_text="")
        assert result.success

    async def test_non_zero_exit(self, process_executor: ProcessExecutor) -> None:
        """Test a failing command reports its exit code."""
        result = await process_executor.execute_capture(
            "/bin/bash", ["-c", "echo oops >&2; exit 4"]
        )

        assert result.exit_code == 4
        assert result.error_text == "oops\n"
        assert not result.success


class TestStartScript:
    """Tests for start_script."""

    async def test_reports_pid_and_result(
        self, process_executor: ProcessExecutor, tmp_path: Path
    ) -> None:
        """Test the pid callback fires and the awaitable yields the result."""
        script = write_script(tmp_path, "echo out\necho err >&2\nexit 3\n")
        pids: list[int] = []

        waiter = await process_executor.start_script(script, timedelta(seconds=30), pids.append)
        result = await waiter

        assert len(pids) == 1
        assert pids[0] > 0
        assert result == ExecuteResult(exit_code=3, output_text="out\n", error_text="err\n")

    async def test_timeout_kills_script(
        self, process_executor: ProcessExecutor, tmp_path: Path
    ) -> None:
        """Test a script running past its timeout is killed and raises TimeoutError."""
        script = write_script(tmp_path, "sleep 60\n")
        pids: list[int] = []

        waiter = await process_executor.start_script(
            script, timedelta(milliseconds=200), pids.append
        )
        with pytest.raises(TimeoutError):
            await waiter

        with pytest.raises(ProcessLookupError):
            os.kill(pids[0], 0)

    async def test_missing_interpreter_raises(self, tmp_path: Path) -> None:
        """Test launch failures surface as OSError."""
        with pytest.raises(OSError):
            await ProcessExecutor().execute_capture(str(tmp_path / "missing"))


def test_bash_command_line() -> None:
    """Test the recorded command line matches how bash is invoked."""
    assert get_bash_command_line(Path("/x/task.sh")) == "/bin/bash /x/task.sh"
