"""Tests for command/response correlation."""

import threading
import time
from typing import Iterator

import pytest

from conftest import SimulatedReceiver, wait_until
from correlator import CommandCorrelator, CommandResult, matches
from receiver import ReceiverLoop
from state import DriverClosedError, FixState, MessageCache
from ubx import (
    CFG_MSG,
    CFG_RATE,
    MON_VER,
    NAV_PVT,
    NAV_STATUS,
    AckAck,
    AckNak,
    CfgMsg,
    CfgRate,
    CfgRst,
    MonVer,
    MsgID,
    NavStatus,
    Poll,
    UnknownMessage,
)

MON_HW = MsgID(0x0A, 0x09)


@pytest.fixture
def stack(device: SimulatedReceiver) -> Iterator[tuple[SimulatedReceiver, CommandCorrelator]]:
    correlator = CommandCorrelator(device, write_delay=0.0, default_timeout=0.5)
    loop = ReceiverLoop(device, correlator, FixState(), MessageCache())
    loop.start()
    yield device, correlator
    loop.stop()


@pytest.fixture
def slow_stack(device: SimulatedReceiver) -> Iterator[tuple[SimulatedReceiver, CommandCorrelator]]:
    correlator = CommandCorrelator(device, write_delay=0.3)
    loop = ReceiverLoop(device, correlator, FixState(), MessageCache())
    loop.start()
    yield device, correlator
    loop.stop()


class TestMatches:
    def test_ack_names_command(self) -> None:
        cmd = CfgMsg.for_message(NAV_PVT, 1)
        assert matches(cmd, AckAck(0x06, 0x01))
        assert not matches(cmd, AckAck(0x06, 0x08))

    def test_nak_names_command(self) -> None:
        assert matches(CfgRate(meas_rate=200), AckNak(0x06, 0x08))
        assert matches(Poll(MON_VER), AckNak(0x0A, 0x04))
        assert not matches(Poll(MON_VER), AckNak(0x06, 0x01))

    def test_poll_answered_by_same_kind(self) -> None:
        assert matches(Poll(MON_VER), MonVer("SW", "HW"))
        assert not matches(Poll(MON_VER), NavStatus())
        # A poll is not answered by an ACK
        assert not matches(Poll(MON_VER), AckAck(0x0A, 0x04))

    def test_config_not_answered_by_echo(self) -> None:
        assert not matches(CfgRate(meas_rate=200), CfgRate(meas_rate=1000))


class TestCommandResult:
    def test_success(self) -> None:
        result = CommandResult(CfgRate(200), AckAck(0x06, 0x08))
        assert result.success
        assert not result.timeout

    def test_nak(self) -> None:
        result = CommandResult(CfgRate(200), AckNak(0x06, 0x08), nak=True)
        assert not result.success
        assert not result.timeout

    def test_timeout(self) -> None:
        result = CommandResult(CfgRate(200), None)
        assert not result.success
        assert result.timeout


class TestSend:
    def test_ack(self, stack) -> None:
        _, correlator = stack
        result = correlator.send(CfgMsg.for_message(NAV_PVT, 1))
        assert result.success
        assert result.response == AckAck(CFG_MSG.cls, CFG_MSG.id)

    def test_poll_response(self, stack) -> None:
        device, correlator = stack
        result = correlator.send(Poll(MON_VER))
        assert result.success
        assert result.response == device.version

    def test_poll_navigation_kind(self, stack) -> None:
        device, correlator = stack
        device.polls[NAV_STATUS] = NavStatus(gps_fix=3, flags=0x01, ttff=31000)
        result = correlator.send(Poll(NAV_STATUS))
        assert result.success
        assert result.response == NavStatus(gps_fix=3, flags=0x01, ttff=31000)

    def test_poll_unknown_kind(self, stack) -> None:
        device, correlator = stack
        hw = UnknownMessage(MON_HW, bytes(60))
        device.polls[MON_HW] = hw
        result = correlator.send(Poll(MON_HW))
        assert result.success
        assert result.response == hw

    def test_nak_distinct_from_timeout(self, stack) -> None:
        device, correlator = stack
        device.nak.add(CFG_RATE)
        result = correlator.send(CfgRate(meas_rate=100))
        assert result.nak
        assert not result.timeout
        assert not result.success

    def test_timeout_after_deadline(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        start = time.monotonic()
        result = correlator.send(CfgRate(meas_rate=100), timeout=0.2)
        elapsed = time.monotonic() - start
        assert result.timeout
        assert 0.2 <= elapsed < 1.0
        assert not correlator.busy

    def test_deadline_includes_write_delay(self, slow_stack) -> None:
        device, correlator = slow_stack
        device.silent = True
        start = time.monotonic()
        assert correlator.send(CfgRate(meas_rate=100), timeout=0.5).timeout
        elapsed = time.monotonic() - start
        assert 0.5 <= elapsed < 0.7

    def test_response_during_write_delay(self, slow_stack) -> None:
        device, correlator = slow_stack
        device.silent = True
        ack = AckAck(CFG_RATE.cls, CFG_RATE.id)
        threading.Timer(0.1, device.push, args=(ack,)).start()
        start = time.monotonic()
        result = correlator.send(CfgRate(meas_rate=100), timeout=0.5)
        assert result.response == ack
        assert time.monotonic() - start < 0.5

    def test_slot_reusable_after_timeout(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        assert correlator.send(CfgRate(meas_rate=100), timeout=0.1).timeout
        device.silent = False
        assert correlator.send(CfgRate(meas_rate=100)).success

    def test_late_response_dropped(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        assert correlator.send(CfgRate(meas_rate=100), timeout=0.1).timeout
        assert not correlator.offer(AckAck(CFG_RATE.cls, CFG_RATE.id))

    def test_unrelated_ack_ignored(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        # ACK for a different command arrives while waiting
        threading.Timer(0.05, device.push, args=(AckAck(CFG_MSG.cls, CFG_MSG.id),)).start()
        assert correlator.send(CfgRate(meas_rate=100), timeout=0.3).timeout

    def test_one_command_in_flight(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        results: list[CommandResult] = []

        def issue() -> None:
            results.append(correlator.send(CfgRate(meas_rate=100), timeout=0.3))

        threads = [threading.Thread(target=issue) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5.0)

        assert len(results) == 2
        assert all(r.timeout for r in results)
        # The second write waited for the first command to time out
        first, second = device.write_times
        assert second - first >= 0.25

    def test_send_no_wait(self, stack) -> None:
        device, correlator = stack
        start = time.monotonic()
        correlator.send_no_wait(CfgRst())
        assert time.monotonic() - start < 0.2
        assert device.sent_messages() == [CfgRst()]

    def test_write_delay(self, device: SimulatedReceiver) -> None:
        correlator = CommandCorrelator(device, write_delay=0.05)
        start = time.monotonic()
        correlator.send_no_wait(CfgRst())
        assert time.monotonic() - start >= 0.05


class TestClose:
    def test_close_fails_in_flight_command(self, stack) -> None:
        device, correlator = stack
        device.silent = True
        errors: list[BaseException] = []

        def issue() -> None:
            try:
                correlator.send(CfgRate(meas_rate=100), timeout=5.0)
            except DriverClosedError as e:
                errors.append(e)

        t = threading.Thread(target=issue)
        t.start()
        assert wait_until(lambda: bool(device.write_times))
        correlator.close()
        t.join(5.0)
        assert len(errors) == 1

    def test_send_after_close(self, stack) -> None:
        _, correlator = stack
        correlator.close()
        with pytest.raises(DriverClosedError):
            correlator.send(Poll(MON_VER))
        with pytest.raises(DriverClosedError):
            correlator.send_no_wait(CfgRst())

