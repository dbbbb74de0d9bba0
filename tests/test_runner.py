"""Tests for the external tool runner.

The running interpreter stands in for the PlatformIO CLI so real
processes are spawned, streamed, and terminated.
"""

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from nodemonitor.cancel import CancellationToken
from nodemonitor.runner import (
    CANCELLED_MARKER,
    NOT_FOUND_MESSAGE,
    OperationResult,
    ProcessInvocation,
    ProcessRunner,
    build_arguments,
    find_platformio,
    read_environments,
    tool_status,
)


@pytest.fixture
def runner():
    return ProcessRunner(tool_path=sys.executable)


def run_script(runner, script, token=None):
    return asyncio.run(runner.run(["-c", script], token=token))


class TestExitStatus:
    def test_exit_zero_is_success(self, runner):
        result = run_script(runner, "print('a'); print('b')")
        assert result.success is True
        assert result.exit_code == 0
        assert result.output == ("a", "b")
        assert result.cancelled is False

    def test_nonzero_exit_is_failure(self, runner):
        result = run_script(runner, "import sys; print('boom'); sys.exit(3)")
        assert result.success is False
        assert result.exit_code == 3
        assert result.output == ("boom",)

    def test_completed_event(self, runner):
        seen = []
        runner.completed.subscribe(seen.append)
        run_script(runner, "pass")
        run_script(runner, "raise SystemExit(1)")
        assert seen == [True, False]


class TestStreaming:
    def test_events_match_captured_output(self, runner):
        lines = []
        runner.output.subscribe(lines.append)
        result = run_script(runner, "for i in range(5): print(f'line {i}', flush=True)")
        assert lines == [f"line {i}" for i in range(5)]
        assert list(result.output) == lines

    def test_each_stream_keeps_its_order(self, runner):
        stderr_lines = []
        runner.stderr.subscribe(stderr_lines.append)
        script = (
            "import sys\n"
            "for i in range(3):\n"
            "    print(f'out {i}', flush=True)\n"
            "    sys.stderr.write(f'err {i}\\n'); sys.stderr.flush()\n"
        )
        result = run_script(runner, script)
        assert [l for l in result.output if l.startswith("out")] == ["out 0", "out 1", "out 2"]
        assert [l for l in result.output if l.startswith("err")] == ["err 0", "err 1", "err 2"]
        assert stderr_lines == ["err 0", "err 1", "err 2"]
        assert len(result.output) == 6

    def test_text_joins_lines(self):
        result = OperationResult(success=True, output=("a", "b"))
        assert result.text == "a\nb"
        assert result.to_dict()["output"] == ["a", "b"]


class TestCancellation:
    def test_cancel_terminates_process(self, runner):
        token = CancellationToken()

        def on_line(line):
            if line == "started":
                token.cancel()

        runner.output.subscribe(on_line)
        start = time.monotonic()
        result = run_script(
            runner,
            "import time; print('started', flush=True); time.sleep(30); print('finished')",
            token=token,
        )
        assert time.monotonic() - start < 10
        assert result.success is False
        assert result.cancelled is True
        assert result.output == ("started", CANCELLED_MARKER)
        assert result.exit_code is not None
        assert result.exit_code != 0

    def test_cancel_from_another_thread(self, runner):
        token = CancellationToken()

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.3, lambda: loop.run_in_executor(None, token.cancel))
            return await runner.run(["-c", "import time; time.sleep(30)"], token=token)

        result = asyncio.run(scenario())
        assert result.cancelled is True
        assert result.output[-1] == CANCELLED_MARKER

    def test_already_cancelled_token_spawns_nothing(self, runner):
        token = CancellationToken()
        token.cancel()
        with patch("nodemonitor.runner.asyncio.create_subprocess_exec") as mock_exec:
            result = run_script(runner, "print('never')", token=token)
        mock_exec.assert_not_called()
        assert result.success is False
        assert result.cancelled is True

    def test_cancel_after_completion_is_harmless(self, runner):
        token = CancellationToken()
        result = run_script(runner, "print('done')", token=token)
        token.cancel()
        assert result.success is True

    def test_task_cancellation_terminates_process(self, runner):
        async def scenario():
            task = asyncio.ensure_future(runner.run(["-c", "import time; time.sleep(30)"]))
            await asyncio.sleep(0.3)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        start = time.monotonic()
        asyncio.run(scenario())
        assert time.monotonic() - start < 10


class TestToolMissing:
    def test_unset_tool_path(self):
        runner = ProcessRunner(tool_path="")
        with patch("nodemonitor.runner.asyncio.create_subprocess_exec") as mock_exec:
            result = asyncio.run(runner.build("/tmp/project"))
        mock_exec.assert_not_called()
        assert result.success is False
        assert result.output == (NOT_FOUND_MESSAGE,)

    def test_missing_executable(self, tmp_path):
        runner = ProcessRunner(tool_path=str(tmp_path / "pio"))
        assert runner.is_available is False
        result = asyncio.run(runner.upload(tmp_path, port="/dev/ttyUSB0"))
        assert result.success is False
        assert result.output == (NOT_FOUND_MESSAGE,)

    def test_spawn_failure_becomes_result(self, runner):
        with patch(
            "nodemonitor.runner.asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=PermissionError("Permission denied")),
        ):
            result = run_script(runner, "pass")
        assert result.success is False
        assert result.output == ("Error: Permission denied",)

    def test_invalid_argument_becomes_result(self, runner):
        completed = []
        runner.completed.subscribe(completed.append)
        result = asyncio.run(runner.build("/tmp/a\x00b"))
        assert result.success is False
        assert result.output[-1].startswith("Error: ")
        assert completed == [False]


class TestArguments:
    def test_build(self):
        assert build_arguments("/work/node") == ["run", "-d", "/work/node"]

    def test_upload_with_env_and_port(self):
        args = build_arguments("/work/node", target="upload", environment="esp32dev", upload_port="COM4")
        assert args == ["run", "-d", "/work/node", "-t", "upload", "-e", "esp32dev", "--upload-port", "COM4"]

    def test_path_with_spaces_is_one_argument(self):
        args = build_arguments("/home/me/My Projects/node a", target="clean")
        assert args[2] == "/home/me/My Projects/node a"
        invocation = ProcessInvocation("pio", args)
        assert "'/home/me/My Projects/node a'" in invocation.command_line()

    def test_operations_build_expected_arguments(self, runner):
        runner.run = AsyncMock(return_value=OperationResult(success=True))
        asyncio.run(runner.build("/p", environment="uno"))
        asyncio.run(runner.upload("/p", port="/dev/ttyACM0"))
        asyncio.run(runner.clean("/p"))
        calls = [c.args[0] for c in runner.run.call_args_list]
        assert calls == [
            ["run", "-d", "/p", "-e", "uno"],
            ["run", "-d", "/p", "-t", "upload", "--upload-port", "/dev/ttyACM0"],
            ["run", "-d", "/p", "-t", "clean"],
        ]


class TestEnvironments:
    def test_reads_env_sections_in_order(self, tmp_path):
        (tmp_path / "platformio.ini").write_text(
            "; comment\n"
            "[platformio]\n"
            "default_envs = esp32\n"
            "\n"
            "[env:esp32]\n"
            "board = esp32dev\n"
            "[common]\n"
            "  [env:uno]  \n"
            "board = uno\n"
        )
        assert read_environments(tmp_path) == ["esp32", "uno"]

    def test_missing_file(self, tmp_path):
        assert read_environments(tmp_path) == []

    def test_unreadable_descriptor(self, tmp_path):
        (tmp_path / "platformio.ini").mkdir()
        assert read_environments(tmp_path) == []

    def test_async_list(self, runner, tmp_path):
        (tmp_path / "platformio.ini").write_text("[env:native]\n")
        assert asyncio.run(runner.list_environments(tmp_path)) == ["native"]


class TestDiscovery:
    @patch("nodemonitor.runner.shutil.which", return_value="/usr/local/bin/pio")
    def test_found_on_path(self, mock_which):
        assert find_platformio() == "/usr/local/bin/pio"

    @patch("nodemonitor.runner.shutil.which", return_value=None)
    def test_found_in_penv(self, mock_which, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        subdir = "Scripts" if sys.platform == "win32" else "bin"
        name = "pio.exe" if sys.platform == "win32" else "pio"
        exe = tmp_path / ".platformio" / "penv" / subdir / name
        exe.parent.mkdir(parents=True)
        exe.write_text("")
        assert find_platformio() == str(exe)

    @patch("nodemonitor.runner.shutil.which", return_value=None)
    def test_not_found(self, mock_which, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert find_platformio() is None

    def test_tool_status(self, tmp_path):
        exe = tmp_path / "pio"
        exe.write_text("")
        assert tool_status(str(exe))["ok"] is True
        assert tool_status(str(tmp_path / "missing"))["ok"] is False
        assert tool_status(None)["ok"] is False
