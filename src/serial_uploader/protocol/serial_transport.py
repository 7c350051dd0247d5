"""
Byte transport layer for the device console.

Provides:
- ByteTransport: the two primitives the upload core relies on
- SerialTransport: pyserial implementation (POSIX and Windows)

Reads take an absolute deadline (time.monotonic()) rather than a duration so
one logical frame can be accumulated over several short reads.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
READ_CHUNK = 512
# fixed per-read timeout; pyserial reconfigures the port on every change
POLL_TIMEOUT = 0.05


class TransportError(Exception):
    """Base exception for transport layer errors"""
    pass


class ReadTimeout(TransportError):
    """No bytes arrived before the read deadline"""
    pass


class ByteTransport:
    """
    Blocking duplex byte channel.

    Implementations must support repeated bounded reads on the same
    connection while the caller accumulates a frame.
    """

    def write_all(self, data: bytes) -> None:
        """
        Write every byte of data.

        Raises:
            TransportError: If the write fails or is incomplete
        """
        raise NotImplementedError

    def read_with_deadline(self, max_len: int, deadline: float) -> bytes:
        """
        Read between 1 and max_len bytes, blocking until deadline at most.

        Args:
            max_len: Upper bound on bytes returned
            deadline: Absolute time.monotonic() value

        Raises:
            ReadTimeout: If the deadline passes with no data
            TransportError: If the read fails
        """
        raise NotImplementedError

    def flush_console(self) -> None:
        """Terminate whatever is pending on the device shell's input line."""
        self.write_all(b"\n")


class SerialTransport(ByteTransport):
    """
    Serial console transport.

    Example:
        with SerialTransport("/dev/ttyACM0", 115200) as transport:
            transport.flush_console()
            transport.write_all(data)
            chunk = transport.read_with_deadline(512, time.monotonic() + 2)
    """

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUDRATE):
        """
        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Link speed
        """
        self.port = port
        self.baudrate = baudrate
        self.ser: Optional[serial.Serial] = None

    def open(self) -> None:
        """
        Open and configure the port: 8N1, raw, no flow control.

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=POLL_TIMEOUT,
                write_timeout=2.0,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            self.ser.reset_input_buffer()
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

        if sys.platform.startswith("linux"):
            self._set_low_latency()

        logger.debug(f"Opened {self.port} at {self.baudrate} bps")

    def close(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _set_low_latency(self) -> None:
        """Drop the USB-serial latency timer to 1 ms where the driver has one."""
        name = Path(self.port).resolve().name
        path = Path("/sys/bus/usb-serial/devices") / name / "latency_timer"
        try:
            path.write_text("1")
        except OSError as e:
            logger.warning(f"Failed to set {path} to 1: {e}")

    def write_all(self, data: bytes) -> None:
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")

        try:
            written = self.ser.write(data)
            self.ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}")
        if written != len(data):
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")
        logger.debug(f"TX ({len(data)} bytes): {bytes(data).hex()}")

    def read_with_deadline(self, max_len: int, deadline: float) -> bytes:
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadTimeout("Read timed out")
            try:
                waiting = self.ser.in_waiting
                data = self.ser.read(min(max(waiting, 1), max_len))
            except serial.SerialException as e:
                raise TransportError(f"Read failed: {e}")
            if data:
                logger.debug(f"RX ({len(data)} bytes): {data.hex()}")
                return data


def open_serial(port: str, baudrate: int = DEFAULT_BAUDRATE) -> SerialTransport:
    """
    Open a serial transport.

    Returns:
        SerialTransport instance (already open)
    """
    transport = SerialTransport(port, baudrate)
    transport.open()
    return transport
