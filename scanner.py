"""UBX frame scanner: find and validate frames in an unreliable byte stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from ubx import CHECKSUM_LEN, HEADER_LEN, SYNC1, SYNC2, MsgID, checksum, pack_msg

# Upper bound for a declared payload length. Anything larger is treated as a
# corrupted length field rather than buffered.
MAX_PAYLOAD_LENGTH = 4096


@dataclass(frozen=True)
class Frame:
    """One checksum-validated UBX packet."""

    msg_id: MsgID
    payload: bytes
    checksum: tuple[int, int]

    @property
    def raw(self) -> bytes:
        return pack_msg(self.msg_id.cls, self.msg_id.id, self.payload)


class FrameScanner:
    """Resynchronizing UBX framer.

    Bytes are appended with feed(); next_frame() returns the next valid frame
    or None when more data is needed. Anything that cannot start a valid frame
    is dropped one byte at a time, so a false sync match inside a payload
    never desynchronizes the stream for longer than one frame.
    """

    def __init__(
        self,
        max_payload: int = MAX_PAYLOAD_LENGTH,
        log: logging.Logger | None = None,
    ) -> None:
        self.max_payload = max_payload
        self._buf = bytearray()
        self._log = log or logging.getLogger("ubxdriver")
        self.consumed = 0
        self.discarded = 0
        self.checksum_errors = 0
        self.length_errors = 0

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def clear(self) -> None:
        self._drop(len(self._buf))

    def _drop(self, count: int, garbage: bool = True) -> None:
        del self._buf[:count]
        self.consumed += count
        if garbage:
            self.discarded += count

    def next_frame(self) -> Frame | None:
        """Return the next valid frame, or None if the buffer holds no complete frame."""
        buf = self._buf
        while len(buf) >= 2:
            # Skip straight to the next candidate first sync byte
            if buf[0] != SYNC1:
                start = buf.find(SYNC1)
                self._drop(start if start > 0 else len(buf))
                continue
            if buf[1] != SYNC2:
                self._drop(1)
                continue

            if len(buf) < HEADER_LEN:
                return None
            length = int.from_bytes(buf[4:6], "little")
            if length > self.max_payload:
                self.length_errors += 1
                self._log.debug(f"UBX length {length} exceeds limit {self.max_payload}; resyncing")
                self._drop(1)
                continue

            total = HEADER_LEN + length + CHECKSUM_LEN
            if len(buf) < total:
                return None

            ck = checksum(bytes(buf[2 : HEADER_LEN + length]))
            received = (buf[total - 2], buf[total - 1])
            if ck != received:
                self.checksum_errors += 1
                self._log.warning(
                    f"UBX checksum mismatch for 0x{buf[2]:02X}-0x{buf[3]:02X} "
                    f"({length} bytes): got {received[0]:02X}{received[1]:02X}, "
                    f"expected {ck[0]:02X}{ck[1]:02X}"
                )
                # Drop a single byte: the sync match may have been payload data
                self._drop(1)
                continue

            frame = Frame(
                msg_id=MsgID(buf[2], buf[3]),
                payload=bytes(buf[HEADER_LEN : HEADER_LEN + length]),
                checksum=received,
            )
            self._drop(total, garbage=False)
            return frame

        # A lone trailing byte is kept only if it can start a frame
        if len(buf) == 1 and buf[0] != SYNC1:
            self._drop(1)
        return None

    def frames(self, data: bytes = b"") -> Iterator[Frame]:
        """Feed data and yield every complete frame now in the buffer."""
        if data:
            self.feed(data)
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame
