"""UBX transports: byte source/sink over serial or I2C (DDC), plus packet logging."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, Protocol

import serial
from smbus2 import SMBus, i2c_msg

from ubx import msg_name

if TYPE_CHECKING:
    from serial import Serial

# Serial read timeout: upper bound on how long read_available() blocks when idle
READ_TIMEOUT = 0.1

# u-blox DDC (I2C) registers
I2C_DEFAULT_ADDRESS = 0x42
REG_BYTES_AVAIL_HIGH = 0xFD
REG_BYTES_AVAIL_LOW = 0xFE
REG_DATA_STREAM = 0xFF
I2C_MAX_CHUNK = 32
I2C_MAX_READ = 512
I2C_POLL_INTERVAL = 0.05


class Transport(Protocol):
    """Byte source and sink the driver talks through."""

    def read_available(self) -> bytes:
        """Return whatever bytes are available now (possibly none)."""
        ...

    def write(self, data: bytes) -> None: ...

    def wait_for_data(self, timeout: float) -> bool:
        """Block until at least one byte is available or timeout expires."""
        ...

    def reset_input(self) -> None: ...

    def close(self) -> None: ...


class SerialTransport:
    """UART transport using pyserial."""

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        read_timeout: float = READ_TIMEOUT,
        log: logging.Logger | None = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self._serial: Serial = serial.Serial(port, baudrate=baudrate, timeout=read_timeout)
        self._log = log or logging.getLogger("ubxdriver")
        self._log.debug(f"opened {port} at {baudrate} baud")

    def read_available(self) -> bytes:
        # Block for at most one read timeout when the line is idle
        return self._serial.read(max(1, self._serial.in_waiting))

    def write(self, data: bytes) -> None:
        self._serial.write(data)
        self._serial.flush()

    def wait_for_data(self, timeout: float) -> bool:
        start_time = time.monotonic()
        while time.monotonic() - start_time < timeout:
            if self._serial.in_waiting:
                return True
            time.sleep(0.01)
        return False

    def reset_input(self) -> None:
        self._serial.reset_input_buffer()

    def close(self) -> None:
        self._serial.close()


class I2CTransport:
    """Register-based I2C (DDC) transport using smbus2.

    Registers 0xFD/0xFE hold the number of pending bytes (big-endian),
    register 0xFF is the message stream.
    """

    def __init__(
        self,
        bus: int = 1,
        address: int = I2C_DEFAULT_ADDRESS,
        max_chunk: int = I2C_MAX_CHUNK,
        log: logging.Logger | None = None,
    ) -> None:
        self.address = address
        self.max_chunk = max_chunk
        self._bus = SMBus(bus)
        self._log = log or logging.getLogger("ubxdriver")
        self._log.debug(f"opened I2C bus {bus} address 0x{address:02X}")

    def _bytes_available(self) -> int:
        w = i2c_msg.write(self.address, bytes([REG_BYTES_AVAIL_HIGH]))
        r = i2c_msg.read(self.address, 2)
        self._bus.i2c_rdwr(w, r)
        high, low = bytes(r)
        return (high << 8) | low

    def _read_stream(self, nbytes: int) -> bytes:
        out = bytearray()
        while nbytes > 0:
            chunk_size = min(nbytes, self.max_chunk)
            w = i2c_msg.write(self.address, bytes([REG_DATA_STREAM]))
            r = i2c_msg.read(self.address, chunk_size)
            self._bus.i2c_rdwr(w, r)
            out.extend(bytes(r))
            nbytes -= chunk_size
        return bytes(out)

    def read_available(self) -> bytes:
        available = self._bytes_available()
        if available == 0:
            # DDC has no blocking read; poll at a fixed interval instead
            time.sleep(I2C_POLL_INTERVAL)
            return b""
        return self._read_stream(min(available, I2C_MAX_READ))

    def write(self, data: bytes) -> None:
        for pos in range(0, len(data), self.max_chunk):
            self._bus.i2c_rdwr(i2c_msg.write(self.address, data[pos : pos + self.max_chunk]))

    def wait_for_data(self, timeout: float) -> bool:
        start_time = time.monotonic()
        while time.monotonic() - start_time < timeout:
            if self._bytes_available():
                return True
            time.sleep(I2C_POLL_INTERVAL)
        return False

    def reset_input(self) -> None:
        available = self._bytes_available()
        while available:
            self._read_stream(min(available, I2C_MAX_READ))
            available = self._bytes_available()

    def close(self) -> None:
        self._bus.close()


class PacketLog:
    """JSON-lines log of every UBX frame sent and received."""

    def __init__(self, path: str) -> None:
        self._file: IO[str] | None = open(path, "a")
        self._lock = threading.Lock()

    def log_frame(self, data: bytes, ts: float, out: bool) -> None:
        """Log a complete UBX frame (sync bytes through checksum)."""
        if not self._file:
            return
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        entry = {
            "t": dt.strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z",
            "tag": "UBX",
            "msg": msg_name(data[2], data[3]),
            "bin": data.hex(),
            "out": out,
        }
        with self._lock:
            self._file.write(json.dumps(entry) + "\n")
            self._file.flush()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None
