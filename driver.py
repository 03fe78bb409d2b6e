"""UBX receiver driver: ties transport, receiver loop, correlator and state together."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import timedelta

from connection import PacketLog, Transport
from correlator import DEFAULT_COMMAND_TIMEOUT, WRITE_DELAY, CommandCorrelator, CommandResult
from receiver import ReceiverLoop
from state import DiagnosticsSnapshot, FixState, Location, MessageCache
from ubx import START_MODES, CfgRate, CfgRst, Message
from version import DeviceProfile, negotiate


@dataclass(frozen=True)
class DriverConfig:
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT  # seconds per command
    startup_timeout: float = 2.0  # wait for first byte before flushing input
    write_delay: float = WRITE_DELAY
    probe_attempts: int = 3
    disable_nmea: bool = True
    negotiate: bool = True
    measurement_rate_ms: int | None = None


class UbxDriver:
    """u-blox receiver driver.

    Usage:
        with UbxDriver(SerialTransport("/dev/ttyACM0")) as gps:
            print(gps.location(blocking=True).format())

    open() starts the receiver loop and negotiates the message set; the
    driver owns the transport and packet log and closes both on close().
    """

    def __init__(
        self,
        transport: Transport,
        config: DriverConfig | None = None,
        packet_log: PacketLog | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config or DriverConfig()
        self._transport = transport
        self._packet_log = packet_log
        self._log = log or logging.getLogger("ubxdriver")
        self._fix_state = FixState()
        self._cache = MessageCache()
        self._correlator = CommandCorrelator(
            transport,
            write_delay=self.config.write_delay,
            default_timeout=self.config.command_timeout,
            packet_log=packet_log,
            log=self._log,
        )
        self._receiver = ReceiverLoop(
            transport,
            self._correlator,
            self._fix_state,
            self._cache,
            packet_log=packet_log,
            log=self._log,
        )
        self._profile: DeviceProfile | None = None
        self._closed = False

    def open(self) -> UbxDriver:
        """Flush startup output, start listening and configure the receiver.

        Raises NegotiationError if the receiver cannot be identified or
        configured; the driver is closed on any failure.
        """
        if self._transport.wait_for_data(self.config.startup_timeout):
            self._transport.reset_input()
        else:
            self._log.warning("no data from receiver during startup wait (wrong device or speed?)")
        self._receiver.start()
        try:
            if self.config.measurement_rate_ms is not None:
                self.set_measurement_rate(self.config.measurement_rate_ms)
            if self.config.negotiate:
                self._profile = negotiate(
                    self._correlator,
                    log=self._log,
                    probe_attempts=self.config.probe_attempts,
                    disable_nmea=self.config.disable_nmea,
                )
        except Exception:
            self.close()
            raise
        return self

    def __enter__(self) -> UbxDriver:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    @property
    def profile(self) -> DeviceProfile | None:
        """Negotiated device profile, None until open() completes negotiation."""
        return self._profile

    @property
    def receiver(self) -> ReceiverLoop:
        return self._receiver

    def location(self, blocking: bool = False, timeout: float | None = None) -> Location | None:
        """Last known location, or wait for the next fix when blocking."""
        return self._fix_state.location(blocking=blocking, timeout=timeout)

    def diagnostics(self) -> DiagnosticsSnapshot:
        snapshot = self._receiver.diagnostics()
        ttff = self._fix_state.time_to_first_fix()
        if snapshot.time_to_first_fix != ttff:
            snapshot = dataclasses.replace(snapshot, time_to_first_fix=ttff)
        return snapshot

    def time_to_first_fix(self) -> timedelta:
        return self._fix_state.time_to_first_fix()

    def latest(self, name: str) -> Message | None:
        """Most recent message of a kind, by name (e.g. 'NAV-PVT')."""
        return self._cache.get(name)

    def messages(self) -> dict[str, Message]:
        """Snapshot of the most recent message of every kind received."""
        return self._cache.snapshot()

    def send_command(self, msg: Message, timeout: float | None = None) -> CommandResult:
        return self._correlator.send(msg, timeout=timeout)

    def send_no_wait(self, msg: Message) -> None:
        self._correlator.send_no_wait(msg)

    def set_measurement_rate(self, meas_rate_ms: int) -> bool:
        """Set the navigation measurement period (CFG-RATE)."""
        result = self.send_command(CfgRate(meas_rate=meas_rate_ms))
        if result.success:
            self._log.info(f"measurement rate set to {meas_rate_ms} ms")
        return result.success

    def reset(self, mode: str = "cold") -> None:
        """Restart the receiver's GNSS (hot, warm or cold) and forget the current fix.

        CFG-RST is not acknowledged, so it is sent without waiting.
        """
        if mode not in START_MODES:
            raise ValueError(f"invalid start mode: {mode!r} (expected one of {', '.join(START_MODES)})")
        self.send_no_wait(CfgRst(nav_bbr_mask=START_MODES[mode]))
        self._fix_state.reset()
        self._receiver.reset_diagnostics()
        self._cache.clear()
        self._log.info(f"{mode} start reset sent")

    def close(self) -> None:
        """Stop the receiver loop and release the transport.

        A command in flight and every blocked location() call fail with
        DriverClosedError.
        """
        if self._closed:
            return
        self._closed = True
        self._receiver.stop()
        self._correlator.close()
        self._fix_state.close()
        self._transport.close()
        if self._packet_log:
            self._packet_log.close()
