"""Tests for serial port utilities."""

from unittest.mock import patch, MagicMock

import pytest

from nodemonitor.serial.port import (
    PortInfo,
    SerialError,
    list_serial_ports,
    open_serial,
)


def _port(device, description, hwid="USB"):
    p = MagicMock()
    p.device = device
    p.description = description
    p.hwid = hwid
    return p


class TestListSerialPorts:
    @patch("nodemonitor.serial.port.comports")
    def test_list_ports_sorted(self, mock_comports):
        mock_comports.return_value = [
            _port("/dev/ttyUSB0", "CP2102 USB to UART Bridge"),
            _port("/dev/ttyACM0", "Arduino Uno"),
        ]
        result = list_serial_ports()
        assert [p.device for p in result] == ["/dev/ttyACM0", "/dev/ttyUSB0"]
        assert result[1].description == "CP2102 USB to UART Bridge"

    @patch("nodemonitor.serial.port.comports")
    def test_skips_bluetooth(self, mock_comports):
        mock_comports.return_value = [
            _port("/dev/cu.Bluetooth-Incoming-Port", "n/a"),
            _port("COM7", "Standard Serial over Bluetooth link"),
            _port("COM3", "USB-SERIAL CH340"),
        ]
        result = list_serial_ports()
        assert result == [PortInfo(device="COM3", description="USB-SERIAL CH340", hwid="USB")]

    @patch("nodemonitor.serial.port.comports")
    def test_list_ports_empty(self, mock_comports):
        mock_comports.return_value = []
        assert list_serial_ports() == []


class TestOpenSerial:
    @patch("nodemonitor.serial.port.serial.Serial")
    def test_open_success(self, mock_serial_class):
        mock_ser = MagicMock()
        mock_serial_class.return_value = mock_ser
        result = open_serial("/dev/ttyUSB0", 115200)
        assert result == mock_ser
        mock_serial_class.assert_called_once_with(
            "/dev/ttyUSB0", 115200, timeout=0.1, write_timeout=1.0,
        )
        assert mock_ser.dtr is True
        assert mock_ser.rts is True

    @patch("nodemonitor.serial.port.serial.Serial")
    def test_open_not_found(self, mock_serial_class):
        import serial
        mock_serial_class.side_effect = serial.SerialException("could not open port")
        with pytest.raises(SerialError) as exc_info:
            open_serial("/dev/nonexistent", 115200)
        assert exc_info.value.exit_code == 2

    @patch("nodemonitor.serial.port.serial.Serial")
    def test_open_busy(self, mock_serial_class):
        import serial
        mock_serial_class.side_effect = serial.SerialException("Device or resource busy")
        with pytest.raises(SerialError) as exc_info:
            open_serial("/dev/ttyUSB0", 115200)
        assert exc_info.value.exit_code == 3

    @patch("nodemonitor.serial.port.serial.Serial")
    def test_open_permission_denied(self, mock_serial_class):
        mock_serial_class.side_effect = PermissionError("Permission denied")
        with pytest.raises(SerialError) as exc_info:
            open_serial("/dev/ttyUSB0", 115200)
        assert exc_info.value.exit_code == 4

    @patch("nodemonitor.serial.port.serial.Serial")
    def test_open_access_denied_on_windows(self, mock_serial_class):
        import serial
        mock_serial_class.side_effect = serial.SerialException("could not open port 'COM3': PermissionError(13, 'Access is denied.')")
        with pytest.raises(SerialError) as exc_info:
            open_serial("COM3", 115200)
        assert exc_info.value.exit_code == 4


class TestSerialError:
    def test_to_dict(self):
        err = SerialError("Port not found", exit_code=2)
        assert err.to_dict() == {"error": "Port not found", "exit_code": 2}
