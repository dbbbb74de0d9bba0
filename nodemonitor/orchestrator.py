"""Sequence builds and uploads across boards with serial port hand-off."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator

from nodemonitor.cancel import CancellationToken
from nodemonitor.config import BoardAssociation
from nodemonitor.events import EventChannel
from nodemonitor.runner import OperationResult, ProcessRunner
from nodemonitor.serial.session import SerialSessionManager

logger = logging.getLogger(__name__)

# Seconds to let a freshly flashed board reboot before reopening its port.
DEFAULT_SETTLE_DELAY = 2.0


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrchestratorBusyError(RuntimeError):
    """A run was started while another one is still running."""


@dataclass
class BoardResult:
    board: BoardAssociation
    result: OperationResult


@dataclass
class RunReport:
    state: RunState
    results: list[BoardResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is RunState.COMPLETED and all(r.result.success for r in self.results)


def associate_device(
    boards: Iterable[BoardAssociation],
    port: str,
    device_id: str,
    board_type: str,
) -> BoardAssociation | None:
    """Attach ``port`` to the first board matching the identified device.

    A board matches on its id or its board type. Only the first match is
    considered, and it is updated only while its port is unset.
    """
    for board in boards:
        if board.id == device_id or board.board_type == board_type:
            if board.port:
                return None
            board.port = port
            return board
    return None


class BuildOrchestrator:
    """Run one orchestrated operation at a time.

    Every run gets its own cancellation token; ``cancel()`` applies to the
    run in progress and is a no-op otherwise. Status strings for the user
    are published on the ``status`` channel.
    """

    def __init__(
        self,
        sessions: SerialSessionManager,
        runner: ProcessRunner,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self.sessions = sessions
        self.runner = runner
        self.settle_delay = settle_delay
        self.status: EventChannel[Callable[[str], None]] = EventChannel("status")
        self._state = RunState.IDLE
        self._token: CancellationToken | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is RunState.RUNNING

    def cancel(self) -> None:
        token = self._token
        if token is not None:
            logger.info("Cancellation requested")
            token.cancel()

    def attach_auto_association(self, boards: list[BoardAssociation]) -> Callable[[], None]:
        """Associate identified devices with ``boards``. Returns an unsubscriber."""

        def on_identified(port: str, device_id: str, board_type: str) -> None:
            board = associate_device(boards, port, device_id, board_type)
            if board is not None:
                logger.info("Associated %s with %s", board.id, port)
                self._notify(f"Associated {board.id} with {port}")

        return self.sessions.identified.subscribe(on_identified)

    async def build_one(self, board: BoardAssociation) -> OperationResult:
        with self._run() as token:
            return await self._build(board, token)

    async def upload_one(self, board: BoardAssociation, reconnect: bool = True) -> OperationResult:
        """Upload to ``board``, releasing its monitored port for the duration.

        After a successful upload the board's port is reopened at its baud
        rate once the settle delay has passed. Pass ``reconnect=False`` to
        leave the port closed.
        """
        with self._run() as token:
            return await self._upload(board, token, reconnect)

    async def build_all(self, boards: Iterable[BoardAssociation]) -> RunReport:
        results: list[BoardResult] = []
        with self._run() as token:
            for board in [b for b in boards if b.project_path]:
                if token.cancelled:
                    break
                results.append(BoardResult(board, await self._build(board, token)))
            self._notify("Build all cancelled" if token.cancelled else "Build all completed")
        return RunReport(self._state, results)

    async def upload_all(self, boards: Iterable[BoardAssociation]) -> RunReport:
        targets = [b for b in boards if b.project_path and b.port]
        results: list[BoardResult] = []
        with self._run() as token:
            await asyncio.to_thread(self.sessions.disconnect_all)
            for board in targets:
                if token.cancelled:
                    break
                results.append(BoardResult(board, await self._upload(board, token, False)))
            self._notify("Upload all cancelled" if token.cancelled else "Upload all completed")
        return RunReport(self._state, results)

    @contextmanager
    def _run(self) -> Iterator[CancellationToken]:
        if self._state is RunState.RUNNING:
            raise OrchestratorBusyError("Another build or upload is already running")
        token = CancellationToken()
        self._token = token
        self._state = RunState.RUNNING
        aborted = False
        try:
            yield token
        except asyncio.CancelledError:
            aborted = True
            raise
        finally:
            self._state = RunState.CANCELLED if aborted or token.cancelled else RunState.COMPLETED
            self._token = None

    async def _build(self, board: BoardAssociation, token: CancellationToken) -> OperationResult:
        if not board.project_path:
            return self._missing_project(board)
        self._notify(f"Building {board.id}...")
        result = await self.runner.build(board.project_path, board.environment, token=token)
        self._notify(f"Build succeeded: {board.id}" if result.success else f"Build failed: {board.id}")
        return result

    async def _upload(
        self,
        board: BoardAssociation,
        token: CancellationToken,
        reconnect: bool,
    ) -> OperationResult:
        if not board.project_path:
            return self._missing_project(board)

        port = board.port
        monitored = bool(port) and self.sessions.is_connected(port)
        if monitored:
            logger.info("Releasing %s for upload", port)
            await asyncio.to_thread(self.sessions.disconnect, port)

        self._notify(f"Uploading to {board.id}...")
        result = await self.runner.upload(
            board.project_path, port=port, environment=board.environment, token=token,
        )
        self._notify(f"Upload succeeded: {board.id}" if result.success else f"Upload failed: {board.id}")

        if result.success and reconnect and port:
            await self._reconnect(board, token)
        return result

    async def _reconnect(self, board: BoardAssociation, token: CancellationToken) -> None:
        if not await token.sleep(self.settle_delay):
            self._notify(f"Reconnect skipped: {board.port}")
            return
        if await asyncio.to_thread(self.sessions.connect, board.port, board.baud_rate):
            self._notify(f"Reconnected {board.port}")
        else:
            self._notify(f"Reconnect failed: {board.port}")

    def _missing_project(self, board: BoardAssociation) -> OperationResult:
        message = f"No project configured for {board.id}"
        self._notify(message)
        return OperationResult(success=False, output=(message,))

    def _notify(self, text: str) -> None:
        logger.info("%s", text)
        self.status.emit(text)
