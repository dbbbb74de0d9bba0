"""Concurrent serial sessions keyed by port name."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable

from nodemonitor.events import EventChannel
from nodemonitor.serial.identify import Identification, IdentificationMatcher
from nodemonitor.serial.port import SerialError, open_serial

logger = logging.getLogger(__name__)

DEFAULT_BAUD_RATE = 115200

# Pause before reading again after a failed read.
READ_RETRY_DELAY = 0.1
# Consecutive read failures after which the port is treated as lost.
MAX_READ_FAILURES = 5

_LINE_SPLIT_RE = re.compile(rb"\r\n|\r|\n")


@dataclass(frozen=True)
class SessionInfo:
    port: str
    baud_rate: int
    identified_id: str | None = None
    identified_board: str | None = None
    is_open: bool = True

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "baud_rate": self.baud_rate,
            "identified_id": self.identified_id,
            "identified_board": self.identified_board,
            "is_open": self.is_open,
        }


class LineFramer:
    """Split a byte stream into trimmed, non-empty text lines.

    The unterminated tail is kept until the next chunk completes it.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._pending = b""

    def feed(self, data: bytes) -> list[str]:
        parts = _LINE_SPLIT_RE.split(self._pending + data)
        self._pending = parts.pop()
        lines = []
        for part in parts:
            line = part.decode(self.encoding, errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    @property
    def pending(self) -> bytes:
        return self._pending


class SerialSession:
    """One open serial connection and its last known device identity."""

    def __init__(self, port: str, baud_rate: int, handle, matcher: IdentificationMatcher):
        self.port = port
        self.baud_rate = baud_rate
        self.handle = handle
        self.matcher = matcher
        self.identified_id: str | None = None
        self.identified_board: str | None = None
        self._framer = LineFramer()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        return bool(getattr(self.handle, "is_open", False)) and not self._stop.is_set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True if stopped meanwhile."""
        return self._stop.wait(timeout)

    def read_available(self) -> bytes:
        """Wait up to the port's read timeout for data, then drain it."""
        data = self.handle.read(self.handle.in_waiting or 1)
        if data:
            waiting = self.handle.in_waiting
            if waiting:
                data += self.handle.read(waiting)
        return data

    def feed(self, data: bytes) -> list[tuple[str, Identification | None]]:
        """Frame ``data`` into lines and record any identification."""
        results = []
        for line in self._framer.feed(data):
            ident = self.matcher.match(line)
            if ident is not None:
                self.identified_id, self.identified_board = ident
            results.append((line, ident))
        return results

    def start(self, target: Callable[["SerialSession"], None]) -> None:
        self._thread = threading.Thread(
            target=target,
            args=(self,),
            name=f"serial-reader-{self.port}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the reader and close the handle."""
        self._stop.set()
        try:
            self.handle.close()
        except Exception as e:
            logger.warning("Error closing %s: %s", self.port, e)

    def join(self, timeout: float = 1.0) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def info(self) -> SessionInfo:
        return SessionInfo(
            port=self.port,
            baud_rate=self.baud_rate,
            identified_id=self.identified_id,
            identified_board=self.identified_board,
            is_open=self.is_open,
        )


class SerialSessionManager:
    """Own the serial sessions, at most one per port.

    The session table is guarded by a single lock. Events are emitted
    from each session's reader thread without holding that lock, so
    handlers may call ``connect`` or ``disconnect``.

    Channels:
        line_received(port, line)
        identified(port, device_id, board_type)
        error(port, exception)
    """

    def __init__(self, matcher: IdentificationMatcher | None = None, opener=None):
        self.matcher = matcher or IdentificationMatcher()
        self._opener = opener
        self._sessions: dict[str, SerialSession] = {}
        self._lock = threading.RLock()
        self.line_received: EventChannel[Callable[[str, str], None]] = EventChannel("line_received")
        self.identified: EventChannel[Callable[[str, str, str], None]] = EventChannel("identified")
        self.error: EventChannel[Callable[[str, Exception], None]] = EventChannel("error")

    def __enter__(self) -> SerialSessionManager:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connect(self, port: str, baud_rate: int = DEFAULT_BAUD_RATE) -> bool:
        """Open ``port``, replacing any existing session on it.

        Returns False and emits ``error`` if the port cannot be opened.
        """
        opener = self._opener or open_serial
        failure: Exception | None = None
        with self._lock:
            old = self._pop_and_stop(port)
            try:
                handle = opener(port, baud_rate)
            except SerialError as e:
                failure = e
            except (OSError, ValueError) as e:
                failure = SerialError(str(e))
            else:
                session = SerialSession(port, baud_rate, handle, self.matcher)
                self._sessions[port] = session
                session.start(self._read_loop)
        if old is not None:
            old.join()

        if failure is not None:
            logger.warning("Failed to connect %s: %s", port, failure)
            self.error.emit(port, failure)
            return False
        logger.info("Connected %s at %d baud", port, baud_rate)
        return True

    def disconnect(self, port: str) -> None:
        """Close the session on ``port`` if there is one."""
        with self._lock:
            session = self._pop_and_stop(port)
        if session is not None:
            session.join()
            logger.info("Disconnected %s", port)

    def disconnect_all(self) -> None:
        with self._lock:
            sessions = [self._pop_and_stop(port) for port in list(self._sessions)]
        for session in sessions:
            if session is not None:
                session.join()
                logger.info("Disconnected %s", session.port)

    close = disconnect_all

    def is_connected(self, port: str) -> bool:
        with self._lock:
            session = self._sessions.get(port)
            return session is not None and session.is_open

    def write(self, port: str, text: str) -> None:
        """Send ``text`` plus a newline. Does nothing if the port is not open."""
        with self._lock:
            session = self._sessions.get(port)
        if session is None or not session.is_open:
            return
        try:
            session.handle.write((text + "\n").encode("utf-8"))
        except Exception as e:
            logger.warning("Write to %s failed: %s", port, e)
            self.error.emit(port, e)

    def get_session(self, port: str) -> SessionInfo | None:
        with self._lock:
            session = self._sessions.get(port)
            return session.info() if session else None

    def list_active_sessions(self) -> list[SessionInfo]:
        with self._lock:
            return [s.info() for s in self._sessions.values()]

    def _pop_and_stop(self, port: str) -> SerialSession | None:
        session = self._sessions.pop(port, None)
        if session is not None:
            session.stop()
        return session

    def _drop(self, session: SerialSession) -> None:
        """Remove a session whose handle has gone away."""
        with self._lock:
            if self._sessions.get(session.port) is session:
                del self._sessions[session.port]
        session.stop()
        logger.info("Closed %s after its handle was lost", session.port)

    def _read_loop(self, session: SerialSession) -> None:
        port = session.port
        failures = 0
        while not session.stopped:
            try:
                data = session.read_available()
            except Exception as e:
                if session.stopped:
                    break
                failures += 1
                logger.warning("Read from %s failed: %s", port, e)
                self.error.emit(port, e)
                if failures >= MAX_READ_FAILURES or not getattr(session.handle, "is_open", False):
                    self._drop(session)
                    break
                if session.wait(READ_RETRY_DELAY):
                    break
                continue
            failures = 0
            if not data:
                continue
            for line, ident in session.feed(data):
                self.line_received.emit(port, line)
                if ident is not None:
                    logger.info("Identified %s (%s) on %s", ident.device_id, ident.board_type, port)
                    self.identified.emit(port, ident.device_id, ident.board_type)
