"""Command/response correlation over the asynchronous UBX message stream."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from connection import PacketLog, Transport
from state import DriverClosedError
from ubx import AckAck, AckNak, Message, Poll, encode

# Pause after every write so the receiver can process the command
WRITE_DELAY = 0.01

DEFAULT_COMMAND_TIMEOUT = 2.0


@dataclass
class CommandResult:
    """Result of a command.

    response holds the correlated message: ACK-ACK for a configuration
    command, the polled message for a poll, ACK-NAK when rejected.
    """

    command: Message
    response: Message | None
    nak: bool = False

    @property
    def success(self) -> bool:
        return self.response is not None and not self.nak

    @property
    def timeout(self) -> bool:
        return self.response is None


def matches(command: Message, response: Message) -> bool:
    """True if response answers command."""
    target = command.msg_id
    if isinstance(response, AckNak):
        return response.acked == target
    if isinstance(command, Poll):
        return response.msg_id == target
    return isinstance(response, AckAck) and response.acked == target


@dataclass
class _Pending:
    command: Message
    future: Future[Message]
    deadline: float


class CommandCorrelator:
    """Serializes commands and blocks the issuer until the matching response arrives.

    Only one command is in flight at a time. The receiver loop hands every
    decoded message to offer(); messages that answer no pending command
    are dropped.
    """

    def __init__(
        self,
        transport: Transport,
        write_delay: float = WRITE_DELAY,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        packet_log: PacketLog | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self.write_delay = write_delay
        self.default_timeout = default_timeout
        self._packet_log = packet_log
        self._log = log or logging.getLogger("ubxdriver")
        # Held for the whole send/wait cycle of one command
        self._command_lock = threading.Lock()
        # Held for each individual write, so frames never interleave on the wire
        self._write_lock = threading.Lock()
        # Guards the pending slot between issuer and receiver threads
        self._slot_lock = threading.Lock()
        self._pending: _Pending | None = None
        self._closed = False

    def _write(self, command: Message) -> None:
        data = encode(command)
        with self._write_lock:
            ts = time.time()
            self._transport.write(data)
            if self._packet_log:
                self._packet_log.log_frame(data, ts, out=True)
            self._log.debug(f"TX {command.msg_id.name} ({len(data) - 8} bytes)")
            time.sleep(self.write_delay)

    def send(self, command: Message, timeout: float | None = None) -> CommandResult:
        """Send a command and wait for its acknowledgement or poll response.

        Returns a CommandResult with response set on success, nak=True if the
        receiver rejected the command and response None on timeout.
        """
        if timeout is None:
            timeout = self.default_timeout
        with self._command_lock:
            if self._closed:
                raise DriverClosedError("driver is closed")
            future: Future[Message] = Future()
            # The deadline covers the write and write delay too
            deadline = time.monotonic() + timeout
            with self._slot_lock:
                self._pending = _Pending(command, future, deadline)
            try:
                self._write(command)
                response = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                self._log.warning(f"no response to {command.msg_id.name} within {timeout:.1f} s")
                return CommandResult(command, None)
            finally:
                with self._slot_lock:
                    self._pending = None

        if isinstance(response, AckNak):
            self._log.warning(f"{command.msg_id.name} rejected by receiver (NAK)")
            return CommandResult(command, response, nak=True)
        return CommandResult(command, response)

    def send_no_wait(self, command: Message) -> None:
        """Send a command without waiting for (or expecting) a response."""
        if self._closed:
            raise DriverClosedError("driver is closed")
        self._write(command)

    def offer(self, msg: Message) -> bool:
        """Resolve the pending command with msg if it answers it."""
        with self._slot_lock:
            pending = self._pending
            if pending is None or pending.future.done():
                return False
            if time.monotonic() > pending.deadline:
                return False
            if not matches(pending.command, msg):
                return False
            pending.future.set_result(msg)
        self._log.debug(f"{msg.msg_id.name} answers {pending.command.msg_id.name}")
        return True

    @property
    def busy(self) -> bool:
        with self._slot_lock:
            return self._pending is not None

    def close(self) -> None:
        """Fail the in-flight command, if any, and refuse new ones."""
        with self._slot_lock:
            self._closed = True
            pending = self._pending
            if pending is not None and not pending.future.done():
                pending.future.set_exception(DriverClosedError("driver closed during command"))
