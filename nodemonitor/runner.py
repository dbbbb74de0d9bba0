"""Run PlatformIO build, upload and clean operations as cancellable tasks."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from nodemonitor.cancel import CancellationToken
from nodemonitor.events import EventChannel

logger = logging.getLogger(__name__)

CANCELLED_MARKER = "Operation cancelled"
NOT_FOUND_MESSAGE = "PlatformIO not found"

# Seconds to wait after terminate() before falling back to kill().
TERMINATE_GRACE = 3.0

STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class OperationResult:
    success: bool
    output: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)
    exit_code: int | None = None
    cancelled: bool = False

    @property
    def text(self) -> str:
        return "\n".join(self.output)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": list(self.output),
            "timestamp": self.timestamp.isoformat(),
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
        }


@dataclass
class ProcessInvocation:
    executable: str
    arguments: list[str]
    cwd: Path | None = None

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.arguments]

    def command_line(self) -> str:
        return shlex.join(self.argv)


def _platformio_candidates() -> list[Path]:
    home = Path.home() / ".platformio" / "penv"
    if sys.platform == "win32":
        return [home / "Scripts" / "pio.exe", home / "Scripts" / "platformio.exe"]
    return [home / "bin" / "pio", home / "bin" / "platformio"]


def find_platformio() -> str | None:
    """Locate the PlatformIO CLI on PATH or in its default install location."""
    for name in ("pio", "platformio"):
        found = shutil.which(name)
        if found:
            return found
    for candidate in _platformio_candidates():
        if candidate.is_file():
            return str(candidate)
    return None


def read_environments(project_path: Path | str) -> list[str]:
    """Return the ``[env:<name>]`` sections of platformio.ini in file order."""
    ini_path = Path(project_path) / "platformio.ini"
    try:
        lines = ini_path.read_text(errors="replace").splitlines()
    except OSError:
        return []

    environments = []
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("[env:") and stripped.endswith("]"):
            name = stripped[len("[env:"):-1].strip()
            if name:
                environments.append(name)
    return environments


def build_arguments(
    project_path: Path | str,
    target: str | None = None,
    environment: str | None = None,
    upload_port: str | None = None,
) -> list[str]:
    """Build ``pio run`` arguments. The project path is always one argv entry."""
    args = ["run", "-d", str(project_path)]
    if target:
        args += ["-t", target]
    if environment:
        args += ["-e", environment]
    if upload_port:
        args += ["--upload-port", upload_port]
    return args


class ProcessRunner:
    """Execute the external tool and stream its output.

    Channels:
        output(line): every captured stdout and stderr line
        stderr(line): stderr lines only
        completed(success): once per run
    """

    def __init__(self, tool_path: str | None = None):
        self.tool_path = tool_path if tool_path is not None else find_platformio()
        self.output: EventChannel[Callable[[str], None]] = EventChannel("output")
        self.stderr: EventChannel[Callable[[str], None]] = EventChannel("stderr")
        self.completed: EventChannel[Callable[[bool], None]] = EventChannel("completed")

    @property
    def is_available(self) -> bool:
        return bool(self.tool_path) and Path(self.tool_path).is_file()

    async def build(
        self,
        project_path: Path | str,
        environment: str | None = None,
        token: CancellationToken | None = None,
    ) -> OperationResult:
        return await self.run(build_arguments(project_path, environment=environment), token)

    async def upload(
        self,
        project_path: Path | str,
        port: str | None = None,
        environment: str | None = None,
        token: CancellationToken | None = None,
    ) -> OperationResult:
        args = build_arguments(project_path, target="upload", environment=environment, upload_port=port)
        return await self.run(args, token)

    async def clean(
        self,
        project_path: Path | str,
        token: CancellationToken | None = None,
    ) -> OperationResult:
        return await self.run(build_arguments(project_path, target="clean"), token)

    async def list_environments(self, project_path: Path | str) -> list[str]:
        return await asyncio.to_thread(read_environments, project_path)

    async def run(
        self,
        arguments: list[str],
        token: CancellationToken | None = None,
        cwd: Path | str | None = None,
    ) -> OperationResult:
        """Run the tool with ``arguments`` and return its captured result."""
        if not self.is_available:
            logger.warning("%s (tool path: %s)", NOT_FOUND_MESSAGE, self.tool_path or "unset")
            result = OperationResult(success=False, output=(NOT_FOUND_MESSAGE,))
            self.completed.emit(False)
            return result

        invocation = ProcessInvocation(self.tool_path, list(arguments), Path(cwd) if cwd else None)
        token = token or CancellationToken()
        output: list[str] = []

        if token.cancelled:
            output.append(CANCELLED_MARKER)
            self.completed.emit(False)
            return OperationResult(success=False, output=tuple(output), cancelled=True)

        logger.info("Running %s", invocation.command_line())
        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=invocation.cwd,
                limit=STREAM_LIMIT,
                start_new_session=sys.platform != "win32",
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to start %s: %s", invocation.executable, e)
            output.append(f"Error: {e}")
            self.completed.emit(False)
            return OperationResult(success=False, output=tuple(output))

        readers = asyncio.gather(
            self._pump(process.stdout, output, is_stderr=False),
            self._pump(process.stderr, output, is_stderr=True),
        )
        waiter = asyncio.ensure_future(token.wait())
        cancelled = False
        read_error: BaseException | None = None
        try:
            done, _ = await asyncio.wait({readers, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if waiter in done:
                cancelled = True
                await self._terminate(process)
                try:
                    await asyncio.wait_for(readers, timeout=TERMINATE_GRACE)
                except asyncio.TimeoutError:
                    logger.warning("Output of process %d still open after exit", process.pid)
            else:
                read_error = readers.exception()
                if read_error is not None:
                    await self._terminate(process)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            readers.cancel()
            raise
        finally:
            waiter.cancel()

        if cancelled:
            logger.info("Cancelled %s", invocation.command_line())
            output.append(CANCELLED_MARKER)
            self.completed.emit(False)
            return OperationResult(
                success=False, output=tuple(output), exit_code=exit_code, cancelled=True,
            )

        if read_error is not None:
            logger.warning("Lost output of %s: %s", invocation.executable, read_error)
            output.append(f"Error: {read_error}")
            self.completed.emit(False)
            return OperationResult(success=False, output=tuple(output), exit_code=exit_code)

        success = exit_code == 0
        logger.info("%s exited with code %s", invocation.executable, exit_code)
        self.completed.emit(success)
        return OperationResult(success=success, output=tuple(output), exit_code=exit_code)

    async def _pump(self, stream: asyncio.StreamReader, output: list[str], is_stderr: bool) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            output.append(line)
            logger.debug("%s", line)
            self.output.emit(line)
            if is_stderr:
                self.stderr.emit(line)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop ``process`` and the uploader children it started."""
        if process.returncode is not None:
            return
        try:
            _signal_process(process, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning("Process %d ignored terminate, killing", process.pid)
            try:
                _signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            except ProcessLookupError:
                return
            await process.wait()


def _signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    if sys.platform == "win32":
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
        return
    try:
        os.killpg(process.pid, sig)
    except PermissionError:
        process.send_signal(sig)


def tool_status(tool_path: str | None) -> dict:
    """Return {"ok": bool, "message": str} for the configured tool."""
    if tool_path and os.path.isfile(tool_path):
        return {"ok": True, "message": f"PlatformIO CLI found: {tool_path}"}
    if tool_path:
        return {"ok": False, "message": f"PlatformIO CLI not found at {tool_path}"}
    return {"ok": False, "message": "PlatformIO CLI not found. Install: https://platformio.org/install/cli"}
