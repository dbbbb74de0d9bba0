"""Serial port discovery and opening for nodemonitor."""

from __future__ import annotations

from dataclasses import dataclass

import serial
from serial.tools.list_ports import comports


@dataclass
class PortInfo:
    device: str
    description: str
    hwid: str


class SerialError(Exception):
    """Structured serial error with exit code."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def to_dict(self) -> dict:
        return {"error": self.message, "exit_code": self.exit_code}


def list_serial_ports() -> list[PortInfo]:
    """List available serial ports, sorted by device name.

    Bluetooth serial profiles are skipped; they block on open and are
    never a flashing target.
    """
    ports = []
    for p in comports():
        text = f"{p.device} {p.description or ''}"
        if "bluetooth" in text.lower():
            continue
        ports.append(PortInfo(
            device=p.device,
            description=p.description,
            hwid=p.hwid,
        ))
    return sorted(ports, key=lambda p: p.device)


def open_serial(
    port: str,
    baud_rate: int,
    timeout: float = 0.1,
    write_timeout: float = 1.0,
) -> serial.Serial:
    """Open a serial port for monitoring, with DTR and RTS asserted.

    Exit codes:
        2: port not found / device disconnected
        3: port busy
        4: permission denied
    """
    try:
        ser = serial.Serial(
            port,
            baud_rate,
            timeout=timeout,
            write_timeout=write_timeout,
        )
    except PermissionError as e:
        raise SerialError(str(e), exit_code=4) from e
    except serial.SerialException as e:
        msg = str(e).lower()
        if "permission" in msg or "access is denied" in msg:
            raise SerialError(str(e), exit_code=4) from e
        if "busy" in msg or "resource" in msg:
            raise SerialError(str(e), exit_code=3) from e
        raise SerialError(str(e), exit_code=2) from e
    ser.dtr = True
    ser.rts = True
    return ser
