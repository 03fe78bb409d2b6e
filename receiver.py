"""Receiver loop: the single reader of the transport."""

from __future__ import annotations

import logging
import threading
import time

import serial

from connection import PacketLog, Transport
from correlator import CommandCorrelator
from scanner import Frame, FrameScanner
from state import DiagnosticsSnapshot, FixState, MessageCache, compute_diagnostics
from ubx import (
    DecodeError,
    Message,
    NavPosllh,
    NavPvt,
    NavSat,
    NavStatus,
    NavSvinfo,
    decode,
)

# Pause before retrying after a transport read error
READ_ERROR_BACKOFF = 0.5

# How long start() waits for the thread to come up
START_TIMEOUT = 5.0


class ReceiverLoop:
    """Reads frames from the transport, decodes them and dispatches by kind.

    Every message is offered to the command correlator, which keeps only
    the answer to the pending command. Navigation solutions and NAV-STATUS
    go to the fix state, and satellite info messages replace the diagnostics
    snapshot. Everything is recorded in the latest-message cache first.
    """

    def __init__(
        self,
        transport: Transport,
        correlator: CommandCorrelator,
        fix_state: FixState,
        cache: MessageCache,
        packet_log: PacketLog | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._correlator = correlator
        self._fix_state = fix_state
        self._cache = cache
        self._packet_log = packet_log
        self._log = log or logging.getLogger("ubxdriver")
        self.scanner = FrameScanner(log=self._log)
        self.started = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._diag_lock = threading.Lock()
        self._diagnostics = DiagnosticsSnapshot()
        self.decode_errors = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the reader thread and wait until it is listening."""
        if self.running:
            return
        self._stop.clear()
        self.started.clear()
        self._thread = threading.Thread(target=self._run, name="ubx-receiver", daemon=True)
        self._thread.start()
        if not self.started.wait(START_TIMEOUT):
            raise RuntimeError("receiver loop failed to start")

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def diagnostics(self) -> DiagnosticsSnapshot:
        with self._diag_lock:
            return self._diagnostics

    def reset_diagnostics(self) -> None:
        with self._diag_lock:
            self._diagnostics = DiagnosticsSnapshot()

    def _run(self) -> None:
        self.started.set()
        self._log.debug("receiver loop started")
        while not self._stop.is_set():
            try:
                data = self._transport.read_available()
            except (OSError, serial.SerialException) as e:
                if self._stop.is_set():
                    break
                self._log.warning(f"transport read failed: {e}")
                self._stop.wait(READ_ERROR_BACKOFF)
                continue
            if not data:
                continue
            ts = time.time()
            for frame in self.scanner.frames(data):
                try:
                    self.process_frame(frame, ts)
                except Exception:
                    self._log.exception(f"error processing {frame.msg_id.name}")
        self._log.debug("receiver loop stopped")

    def process_frame(self, frame: Frame, ts: float | None = None) -> Message | None:
        """Decode one frame and dispatch it. Returns the decoded message."""
        if self._packet_log:
            self._packet_log.log_frame(frame.raw, ts if ts is not None else time.time(), out=False)
        try:
            msg = decode(frame.msg_id, frame.payload)
        except DecodeError as e:
            self.decode_errors += 1
            self._log.warning(f"dropping {frame.msg_id.name}: {e}")
            return None
        self._log.debug(f"RX {frame.msg_id.name} ({len(frame.payload)} bytes)")
        self._cache.record(msg)
        self.dispatch(msg)
        return msg

    def dispatch(self, msg: Message) -> None:
        self._correlator.offer(msg)
        match msg:
            case NavPvt() | NavPosllh() | NavStatus():
                location = self._fix_state.update(msg)
                if location is not None:
                    self._log.debug(f"fix: {location.format()}")
            case NavSat() | NavSvinfo():
                self._update_diagnostics(msg.cnos)
            case _:
                pass

    def _update_diagnostics(self, cnos: list[int]) -> None:
        snapshot = compute_diagnostics(cnos, self._fix_state.time_to_first_fix())
        with self._diag_lock:
            self._diagnostics = snapshot
