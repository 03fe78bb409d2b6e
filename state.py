"""Fix, diagnostics and latest-message state derived from navigation messages."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from ubx import MM_PER_M, Message, NavPosllh, NavPvt, NavStatus

# Number of strongest satellites averaged into the signal quality score
TOP_SIGNALS = 4


class DriverClosedError(RuntimeError):
    """A blocking operation was interrupted because the driver was closed."""


@dataclass(frozen=True)
class Location:
    """A navigation fix."""

    latitude: float  # degrees
    longitude: float  # degrees
    height: float  # meters above ellipsoid
    h_acc: float  # meters
    v_acc: float  # meters
    time: datetime | None = None  # UTC, if the receiver reported valid date/time
    num_sv: int | None = None

    @classmethod
    def from_pvt(cls, msg: NavPvt) -> Location:
        return cls(
            latitude=msg.latitude,
            longitude=msg.longitude,
            height=msg.height / MM_PER_M,
            h_acc=msg.h_acc / MM_PER_M,
            v_acc=msg.v_acc / MM_PER_M,
            time=msg.time,
            num_sv=msg.num_sv,
        )

    @classmethod
    def from_posllh(cls, msg: NavPosllh) -> Location:
        return cls(
            latitude=msg.latitude,
            longitude=msg.longitude,
            height=msg.height / MM_PER_M,
            h_acc=msg.h_acc / MM_PER_M,
            v_acc=msg.v_acc / MM_PER_M,
        )

    def format(self) -> str:
        return (
            f"Position: {self.latitude:.7f}, {self.longitude:.7f}; "
            f"height {self.height:.3f} m; accuracy {self.h_acc:.3g} m / {self.v_acc:.3g} m"
        )


@dataclass(frozen=True)
class DiagnosticsSnapshot:
    """Signal diagnostics derived from the latest satellite info message."""

    known_satellites: int = 0
    satellites_in_view: int = 0
    signal_quality: float = 0.0  # mean C/N0 of the strongest satellites, dBHz
    time_to_first_fix: timedelta = timedelta(0)

    def format(self) -> str:
        return (
            f"Satellites: {self.satellites_in_view} in view, {self.known_satellites} known\n"
            f"Signal quality: {self.signal_quality:.1f} dBHz\n"
            f"Time to first fix: {self.time_to_first_fix.total_seconds():.1f} s"
        )


def compute_diagnostics(
    cnos: list[int], time_to_first_fix: timedelta, top: int = TOP_SIGNALS
) -> DiagnosticsSnapshot:
    """Summarize per-satellite C/N0 values.

    Quality is the mean of the strongest `top` values (or of all of them when
    fewer are reported), in view counts satellites with a non-zero C/N0.
    """
    strongest = sorted(cnos, reverse=True)[:top]
    quality = sum(strongest) / len(strongest) if strongest else 0.0
    return DiagnosticsSnapshot(
        known_satellites=len(cnos),
        satellites_in_view=sum(1 for cno in cnos if cno > 0),
        signal_quality=float(quality),
        time_to_first_fix=time_to_first_fix,
    )


class _FixEpoch:
    """Broadcast cell shared by every waiter of one "next fix"."""

    __slots__ = ("location",)

    def __init__(self) -> None:
        self.location: Location | None = None


class FixState:
    """Last known location and time to first fix.

    Blocking readers wait on a condition variable for the current epoch to be
    resolved; one accepted fix resolves every waiter of that epoch with the
    same Location object.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._location: Location | None = None
        self._ttff = timedelta(0)
        self._device_ttff = timedelta(0)
        self._status_fix_ok = False
        self._epoch = _FixEpoch()
        self._closed = False
        self.fix_count = 0
        # Readers currently blocked in location(blocking=True)
        self.waiting = 0

    def location(self, blocking: bool = False, timeout: float | None = None) -> Location | None:
        """Current location, or wait for the next accepted fix if blocking.

        Without a timeout a blocking call waits indefinitely; with one,
        TimeoutError is raised when it expires. DriverClosedError is raised
        if the driver is closed while waiting.
        """
        with self._cond:
            if not blocking:
                return self._location
            if self._closed:
                raise DriverClosedError("driver is closed")
            epoch = self._epoch
            self.waiting += 1
            try:
                resolved = self._cond.wait_for(
                    lambda: epoch.location is not None or self._closed, timeout=timeout
                )
            finally:
                self.waiting -= 1
            if epoch.location is not None:
                return epoch.location
            if not resolved:
                raise TimeoutError(f"no fix within {timeout} s")
            raise DriverClosedError("driver closed while waiting for a fix")

    def time_to_first_fix(self) -> timedelta:
        with self._cond:
            return self._ttff

    @property
    def has_fix(self) -> bool:
        with self._cond:
            return self._location is not None

    def update(self, msg: Message) -> Location | None:
        """Apply a navigation message; return the new Location if it was accepted as a fix."""
        with self._cond:
            match msg:
                case NavPvt():
                    if not msg.gnss_fix_ok:
                        return None
                    location = Location.from_pvt(msg)
                case NavPosllh():
                    # NAV-POSLLH has no validity flag of its own
                    if not self._status_fix_ok:
                        return None
                    location = Location.from_posllh(msg)
                case NavStatus():
                    self._apply_status(msg)
                    return None
                case _:
                    return None
            self._accept(location)
            return location

    def _apply_status(self, msg: NavStatus) -> None:
        self._status_fix_ok = msg.gps_fix_ok
        if msg.ttff > 0:
            self._device_ttff = timedelta(milliseconds=msg.ttff)
            if self._location is not None and not self._ttff:
                self._ttff = self._device_ttff

    def _accept(self, location: Location) -> None:
        if self._location is None and not self._ttff and self._device_ttff:
            self._ttff = self._device_ttff
        self._location = location
        self.fix_count += 1
        self._epoch.location = location
        self._epoch = _FixEpoch()
        self._cond.notify_all()

    def reset(self) -> None:
        """Forget the current fix and time to first fix. Pending waiters keep waiting."""
        with self._cond:
            self._location = None
            self._ttff = timedelta(0)
            self._device_ttff = timedelta(0)
            self._status_fix_ok = False

    def close(self) -> None:
        """Wake every blocked reader with DriverClosedError."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class MessageCache:
    """Most recently decoded message of each kind, keyed by message name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, Message] = {}
        self._received: dict[str, float] = {}

    def record(self, msg: Message) -> None:
        name = msg.msg_id.name
        with self._lock:
            self._messages[name] = msg
            self._received[name] = time.monotonic()

    def get(self, name: str) -> Message | None:
        with self._lock:
            return self._messages.get(name)

    def age(self, name: str) -> float | None:
        """Seconds since a message of this kind was last received."""
        with self._lock:
            received = self._received.get(name)
        if received is None:
            return None
        return time.monotonic() - received

    def snapshot(self) -> dict[str, Message]:
        with self._lock:
            return dict(self._messages)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._received.clear()
