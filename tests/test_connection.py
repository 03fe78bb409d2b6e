"""Tests for transports and the packet log, with the hardware libraries faked out."""

import json
from pathlib import Path

import pytest

import connection
from connection import REG_BYTES_AVAIL_HIGH, REG_DATA_STREAM, I2CTransport, PacketLog, SerialTransport
from ubx import AckAck, encode


class FakeSerial:
    def __init__(self, port: str, baudrate: int, timeout: float) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.rx = bytearray()
        self.tx = bytearray()
        self.is_open = True

    @property
    def in_waiting(self) -> int:
        return len(self.rx)

    def read(self, size: int) -> bytes:
        data = bytes(self.rx[:size])
        del self.rx[:size]
        return data

    def write(self, data: bytes) -> int:
        self.tx.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        self.rx.clear()

    def close(self) -> None:
        self.is_open = False


class FakeI2CMsg:
    def __init__(self, addr: int, data: bytes, read: bool) -> None:
        self.addr = addr
        self.data = bytearray(data)
        self.is_read = read

    def __bytes__(self) -> bytes:
        return bytes(self.data)

    @classmethod
    def write(cls, addr: int, data: bytes) -> "FakeI2CMsg":
        return cls(addr, data, read=False)

    @classmethod
    def read(cls, addr: int, length: int) -> "FakeI2CMsg":
        return cls(addr, bytes(length), read=True)


class FakeSMBus:
    """u-blox DDC register model: byte count at 0xFD/0xFE, stream at 0xFF."""

    def __init__(self, bus: int) -> None:
        self.bus = bus
        self.stream = bytearray()
        self.written: list[bytes] = []
        self.closed = False

    def i2c_rdwr(self, *msgs: FakeI2CMsg) -> None:
        if len(msgs) == 1:
            self.written.append(bytes(msgs[0].data))
            return
        reg, rd = msgs[0].data[0], msgs[1]
        if reg == REG_BYTES_AVAIL_HIGH:
            rd.data[:] = len(self.stream).to_bytes(2, "big")
        elif reg == REG_DATA_STREAM:
            n = len(rd.data)
            rd.data[:] = self.stream[:n].ljust(n, b"\xff")
            del self.stream[:n]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_serial(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(connection.serial, "Serial", FakeSerial)


@pytest.fixture
def fake_i2c(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(connection, "SMBus", FakeSMBus)
    monkeypatch.setattr(connection, "i2c_msg", FakeI2CMsg)


class TestSerialTransport:
    def test_read_available(self, fake_serial: None) -> None:
        t = SerialTransport("/dev/ttyACM0", baudrate=38400)
        t._serial.rx.extend(b"\xb5\x62\x05\x01")
        assert t._serial.baudrate == 38400
        assert t.read_available() == b"\xb5\x62\x05\x01"
        assert t.read_available() == b""

    def test_write(self, fake_serial: None) -> None:
        t = SerialTransport("/dev/ttyACM0")
        t.write(b"\x01\x02")
        assert bytes(t._serial.tx) == b"\x01\x02"

    def test_wait_for_data(self, fake_serial: None) -> None:
        t = SerialTransport("/dev/ttyACM0")
        assert not t.wait_for_data(0.05)
        t._serial.rx.extend(b"$")
        assert t.wait_for_data(0.05)
        t.reset_input()
        assert t._serial.in_waiting == 0

    def test_close(self, fake_serial: None) -> None:
        t = SerialTransport("/dev/ttyACM0")
        t.close()
        assert not t._serial.is_open


class TestI2CTransport:
    def test_reads_pending_bytes(self, fake_i2c: None) -> None:
        t = I2CTransport(bus=1)
        frame = encode(AckAck(0x06, 0x01)) * 5
        t._bus.stream.extend(frame)
        assert t.read_available() == frame
        assert t.read_available() == b""

    def test_write_chunked(self, fake_i2c: None) -> None:
        t = I2CTransport(bus=1, max_chunk=4)
        t.write(bytes(range(10)))
        assert t._bus.written == [bytes([0, 1, 2, 3]), bytes([4, 5, 6, 7]), bytes([8, 9])]

    def test_wait_and_flush(self, fake_i2c: None) -> None:
        t = I2CTransport(bus=1)
        assert not t.wait_for_data(0.05)
        t._bus.stream.extend(b"noise")
        assert t.wait_for_data(0.05)
        t.reset_input()
        assert t._bus.stream == bytearray()

    def test_close(self, fake_i2c: None) -> None:
        t = I2CTransport(bus=3, address=0x43)
        t.close()
        assert t._bus.closed
        assert t._bus.bus == 3


class TestPacketLog:
    def test_entry_format(self, tmp_path: Path) -> None:
        path = tmp_path / "log.jsonl"
        log = PacketLog(str(path))
        frame = encode(AckAck(0x06, 0x01))
        log.log_frame(frame, 0.0, out=False)
        log.close()
        log.log_frame(frame, 0.0, out=False)  # ignored after close

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry == {
            "t": "1970-01-01T00:00:00.000000Z",
            "tag": "UBX",
            "msg": "ACK-ACK",
            "bin": frame.hex(),
            "out": False,
        }
