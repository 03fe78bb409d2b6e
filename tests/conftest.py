"""Shared fixtures: an in-memory transport and a simulated u-blox receiver."""

from __future__ import annotations

import threading
import time
from typing import Callable

import pytest

from driver import DriverConfig
from scanner import FrameScanner
from ubx import (
    MON_VER,
    AckAck,
    AckNak,
    CfgMsg,
    CfgRate,
    Message,
    MonVer,
    MsgID,
    Poll,
    decode,
    encode,
)

M8_VERSION = MonVer(
    sw_version="ROM CORE 3.01 (107888)",
    hw_version="00080000",
    extensions=("FWVER=SPG 3.01", "PROTVER=18.00", "GPS;GLO;GAL;BDS"),
)


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakeTransport:
    """In-memory transport: tests push device output, writes are recorded."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._rx = bytearray()
        self.written: list[bytes] = []
        self.write_times: list[float] = []
        self.read_errors: list[Exception] = []
        self.closed = False

    def push(self, data: bytes | Message) -> None:
        """Queue bytes (or an encoded message) as if sent by the device."""
        if not isinstance(data, (bytes, bytearray)):
            data = encode(data)
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    def read_available(self) -> bytes:
        with self._cond:
            if self.read_errors:
                raise self.read_errors.pop(0)
            if not self._rx:
                self._cond.wait(0.02)
            data = bytes(self._rx)
            self._rx.clear()
            return data

    def write(self, data: bytes) -> None:
        self.written.append(bytes(data))
        self.write_times.append(time.monotonic())

    def wait_for_data(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: bool(self._rx), timeout=timeout)

    def reset_input(self) -> None:
        with self._cond:
            self._rx.clear()

    def close(self) -> None:
        self.closed = True

    def sent_messages(self) -> list[Message]:
        scanner = FrameScanner()
        return [decode(f.msg_id, f.payload) for f in scanner.frames(b"".join(self.written))]


class SimulatedReceiver(FakeTransport):
    """Answers MON-VER polls and acknowledges configuration commands.

    silent: answer nothing at all.
    polls: replies to polls of other message kinds, by id.
    nak: CFG-MSG targets (or command ids) to reject with ACK-NAK.
    """

    def __init__(self, version: MonVer | None = M8_VERSION) -> None:
        super().__init__()
        self.version = version
        self.silent = False
        self.nak: set[MsgID] = set()
        self.polls: dict[MsgID, Message] = {}

    def write(self, data: bytes) -> None:
        super().write(data)
        if self.silent:
            return
        for frame in FrameScanner().frames(data):
            for reply in self.respond(decode(frame.msg_id, frame.payload)):
                self.push(reply)

    def respond(self, msg: Message) -> list[Message]:
        match msg:
            case Poll(msg_id=msg_id) if msg_id == MON_VER:
                if self.version is None:
                    return []
                return [self.version]
            case Poll(msg_id=msg_id) if msg_id in self.polls:
                return [self.polls[msg_id]]
            case CfgMsg():
                if msg.target in self.nak:
                    return [AckNak(msg.msg_id.cls, msg.msg_id.id)]
                return [AckAck(msg.msg_id.cls, msg.msg_id.id)]
            case CfgRate():
                if msg.msg_id in self.nak:
                    return [AckNak(msg.msg_id.cls, msg.msg_id.id)]
                return [AckAck(msg.msg_id.cls, msg.msg_id.id)]
        return []


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def device() -> SimulatedReceiver:
    return SimulatedReceiver()


@pytest.fixture
def fast_config() -> DriverConfig:
    return DriverConfig(command_timeout=0.5, startup_timeout=0.05, write_delay=0.0, probe_attempts=2)
