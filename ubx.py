"""UBX protocol implementation: framing, checksum and message codec."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, ClassVar

# Sync bytes
SYNC1 = 0xB5
SYNC2 = 0x62

# sync(2) + class(1) + id(1) + length(2)
HEADER_LEN = 6
CHECKSUM_LEN = 2

# Message classes
CLS_NAV = 0x01
CLS_ACK = 0x05
CLS_CFG = 0x06
CLS_MON = 0x0A
CLS_NMEA = 0xF0


class MsgID:
    """Combined class/id identifier for UBX messages."""

    def __init__(self, cls: int, id: int) -> None:
        self.cls = cls
        self.id = id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MsgID):
            return NotImplemented
        return self.cls == other.cls and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.cls, self.id))

    def __repr__(self) -> str:
        return f"MsgID(0x{self.cls:02X}, 0x{self.id:02X})"

    @property
    def name(self) -> str:
        return msg_name(self.cls, self.id)


# ACK messages
ACK_NAK = MsgID(CLS_ACK, 0x00)
ACK_ACK = MsgID(CLS_ACK, 0x01)

# NAV messages
NAV_POSLLH = MsgID(CLS_NAV, 0x02)
NAV_STATUS = MsgID(CLS_NAV, 0x03)
NAV_PVT = MsgID(CLS_NAV, 0x07)
NAV_SVINFO = MsgID(CLS_NAV, 0x30)
NAV_SAT = MsgID(CLS_NAV, 0x35)

# MON messages
MON_VER = MsgID(CLS_MON, 0x04)

# CFG messages
CFG_MSG = MsgID(CLS_CFG, 0x01)
CFG_RST = MsgID(CLS_CFG, 0x04)
CFG_RATE = MsgID(CLS_CFG, 0x08)

# Standard NMEA sentences (Class 0xF0), only ever switched off via CFG-MSG
NMEA_GGA = MsgID(CLS_NMEA, 0x00)
NMEA_GLL = MsgID(CLS_NMEA, 0x01)
NMEA_GSA = MsgID(CLS_NMEA, 0x02)
NMEA_GSV = MsgID(CLS_NMEA, 0x03)
NMEA_RMC = MsgID(CLS_NMEA, 0x04)
NMEA_VTG = MsgID(CLS_NMEA, 0x05)

NMEA_MESSAGES: list[tuple[str, MsgID]] = [
    ("GGA", NMEA_GGA),
    ("GLL", NMEA_GLL),
    ("GSA", NMEA_GSA),
    ("GSV", NMEA_GSV),
    ("RMC", NMEA_RMC),
    ("VTG", NMEA_VTG),
]


def _build_msg_names() -> dict[tuple[int, int], str]:
    """Build message name lookup from MsgID constants."""
    names: dict[tuple[int, int], str] = {}
    for name, obj in globals().items():
        if isinstance(obj, MsgID) and "_" in name:
            # Convert NAV_PVT -> "NAV-PVT", ACK_ACK -> "ACK-ACK"
            names[(obj.cls, obj.id)] = name.replace("_", "-")
    return names


MSG_NAMES: dict[tuple[int, int], str] = _build_msg_names()


def msg_name(cls: int, id: int) -> str:
    """Human readable message name, e.g. 'NAV-PVT' or 'UNK-0x01-0x99'."""
    return MSG_NAMES.get((cls, id), f"UNK-0x{cls:02X}-0x{id:02X}")


# NAV-PVT flags / NAV-STATUS flags
PVT_FLAG_GNSS_FIX_OK = 0x01
STATUS_FLAG_GPS_FIX_OK = 0x01

# NAV-PVT valid bits
PVT_VALID_DATE = 0x01
PVT_VALID_TIME = 0x02

# navBbrMask for CFG-RST
BBR_HOT_START = 0x0000
BBR_WARM_START = 0x0001
BBR_COLD_START = 0xFFFF

START_MODES = {
    "hot": BBR_HOT_START,
    "warm": BBR_WARM_START,
    "cold": BBR_COLD_START,
}

# resetMode for CFG-RST
RESET_SW_GNSS_ONLY = 0x02

# Position scaling
COORD_SCALE = 1e-7  # degrees per LSB
MM_PER_M = 1000.0

# MON-VER field sizes
MON_VER_SW_LEN = 30
MON_VER_HW_LEN = 10
MON_VER_EXT_LEN = 30


def checksum(data: bytes) -> tuple[int, int]:
    """8-bit Fletcher checksum (ck_a, ck_b) over class, id, length and payload."""
    ck_a = 0
    ck_b = 0
    for byte in data:
        ck_a = (ck_a + byte) & 0xFF
        ck_b = (ck_b + ck_a) & 0xFF
    return ck_a, ck_b


def calc_checksum(cls: int, id: int, payload: bytes) -> tuple[int, int]:
    """Calculate UBX checksum for a message."""
    return checksum(bytes([cls, id]) + len(payload).to_bytes(2, "little") + payload)


def pack_msg(cls: int, id: int, payload: bytes) -> bytes:
    """Pack a complete UBX message with header and checksum."""
    length = len(payload)
    if length > 0xFFFF:
        raise ValueError(f"UBX payload too long: {length} bytes")
    ck_a, ck_b = calc_checksum(cls, id, payload)

    msg = bytearray()
    msg.append(SYNC1)
    msg.append(SYNC2)
    msg.append(cls)
    msg.append(id)
    msg.extend(length.to_bytes(2, "little"))
    msg.extend(payload)
    msg.append(ck_a)
    msg.append(ck_b)

    return bytes(msg)


class DecodeError(ValueError):
    """Frame is well formed but its payload cannot be interpreted."""


# ============================================================================
# Message Dataclasses
# ============================================================================


@dataclass(frozen=True)
class AckAck:
    """ACK-ACK: the receiver accepted a command."""

    msg_id: ClassVar[MsgID] = ACK_ACK

    ack_cls: int
    ack_id: int

    @property
    def acked(self) -> MsgID:
        return MsgID(self.ack_cls, self.ack_id)


@dataclass(frozen=True)
class AckNak:
    """ACK-NAK: the receiver rejected a command. Carries no reason code."""

    msg_id: ClassVar[MsgID] = ACK_NAK

    ack_cls: int
    ack_id: int

    @property
    def acked(self) -> MsgID:
        return MsgID(self.ack_cls, self.ack_id)


@dataclass(frozen=True)
class NavPvt:
    """NAV-PVT: navigation position velocity time solution.

    Protocol 14 receivers send the first 84 bytes only; the trailing
    head_veh/mag_dec/mag_acc fields then decode as zero.
    """

    msg_id: ClassVar[MsgID] = NAV_PVT

    itow: int = 0
    year: int = 0
    month: int = 0
    day: int = 0
    hour: int = 0
    minute: int = 0
    second: int = 0
    valid: int = 0
    t_acc: int = 0
    nano: int = 0
    fix_type: int = 0  # 0=no fix, 2=2D, 3=3D, 5=time only
    flags: int = 0
    flags2: int = 0
    num_sv: int = 0
    lon: int = 0
    lat: int = 0
    height: int = 0  # mm above ellipsoid
    h_msl: int = 0  # mm above mean sea level
    h_acc: int = 0  # mm
    v_acc: int = 0  # mm
    vel_n: int = 0
    vel_e: int = 0
    vel_d: int = 0
    g_speed: int = 0
    head_mot: int = 0
    s_acc: int = 0
    head_acc: int = 0
    p_dop: int = 0  # 0.01 scale
    reserved1: bytes = bytes(6)
    head_veh: int = 0
    mag_dec: int = 0
    mag_acc: int = 0

    @property
    def gnss_fix_ok(self) -> bool:
        return bool(self.flags & PVT_FLAG_GNSS_FIX_OK)

    @property
    def latitude(self) -> float:
        return self.lat * COORD_SCALE

    @property
    def longitude(self) -> float:
        return self.lon * COORD_SCALE

    @property
    def time(self) -> datetime | None:
        """UTC time of the solution, or None if date/time are not valid."""
        if (self.valid & (PVT_VALID_DATE | PVT_VALID_TIME)) != (PVT_VALID_DATE | PVT_VALID_TIME):
            return None
        try:
            base = datetime(
                self.year, self.month, self.day, self.hour, self.minute, self.second,
                tzinfo=timezone.utc,
            )
        except ValueError:
            return None
        # nano may be negative (it is a correction to the rounded second)
        return base + timedelta(microseconds=self.nano // 1000)


@dataclass(frozen=True)
class NavPosllh:
    """NAV-POSLLH: geodetic position (legacy message set)."""

    msg_id: ClassVar[MsgID] = NAV_POSLLH

    itow: int = 0
    lon: int = 0
    lat: int = 0
    height: int = 0
    h_msl: int = 0
    h_acc: int = 0
    v_acc: int = 0

    @property
    def latitude(self) -> float:
        return self.lat * COORD_SCALE

    @property
    def longitude(self) -> float:
        return self.lon * COORD_SCALE


@dataclass(frozen=True)
class NavStatus:
    """NAV-STATUS: receiver navigation status, including time to first fix."""

    msg_id: ClassVar[MsgID] = NAV_STATUS

    itow: int = 0
    gps_fix: int = 0
    flags: int = 0
    fix_stat: int = 0
    flags2: int = 0
    ttff: int = 0  # ms
    msss: int = 0  # ms since startup/reset

    @property
    def gps_fix_ok(self) -> bool:
        return bool(self.flags & STATUS_FLAG_GPS_FIX_OK)


@dataclass(frozen=True)
class SatInfo:
    """One satellite entry of NAV-SAT."""

    gnss_id: int
    sv_id: int
    cno: int  # dBHz
    elev: int
    azim: int
    pr_res: int
    flags: int


@dataclass(frozen=True)
class NavSat:
    """NAV-SAT: satellite information (protocol 15 and later)."""

    msg_id: ClassVar[MsgID] = NAV_SAT

    itow: int = 0
    version: int = 1
    satellites: tuple[SatInfo, ...] = ()

    @property
    def cnos(self) -> list[int]:
        return [sat.cno for sat in self.satellites]


@dataclass(frozen=True)
class SvChannel:
    """One channel entry of NAV-SVINFO."""

    chn: int
    sv_id: int
    flags: int
    quality: int
    cno: int  # dBHz
    elev: int
    azim: int
    pr_res: int


@dataclass(frozen=True)
class NavSvinfo:
    """NAV-SVINFO: space vehicle information (legacy message set)."""

    msg_id: ClassVar[MsgID] = NAV_SVINFO

    itow: int = 0
    global_flags: int = 0
    channels: tuple[SvChannel, ...] = ()

    @property
    def cnos(self) -> list[int]:
        return [ch.cno for ch in self.channels]


@dataclass(frozen=True)
class MonVer:
    """MON-VER response: software, hardware version and extension strings."""

    msg_id: ClassVar[MsgID] = MON_VER

    sw_version: str
    hw_version: str
    extensions: tuple[str, ...] = ()


@dataclass(frozen=True)
class CfgMsg:
    """CFG-MSG: output rate of one message.

    rates is empty for a rate poll, has one entry for the current port
    and six entries (one per I/O target) for the per-port form.
    """

    msg_id: ClassVar[MsgID] = CFG_MSG

    target_cls: int
    target_id: int
    rates: tuple[int, ...] = (1,)

    @property
    def target(self) -> MsgID:
        return MsgID(self.target_cls, self.target_id)

    @classmethod
    def for_message(cls, target: MsgID, rate: int) -> CfgMsg:
        return cls(target.cls, target.id, (rate,))


@dataclass(frozen=True)
class CfgRate:
    """CFG-RATE: navigation measurement and solution rate."""

    msg_id: ClassVar[MsgID] = CFG_RATE

    meas_rate: int  # ms
    nav_rate: int = 1
    time_ref: int = 1  # 0=UTC, 1=GPS


@dataclass(frozen=True)
class CfgRst:
    """CFG-RST: reset the receiver. Never acknowledged."""

    msg_id: ClassVar[MsgID] = CFG_RST

    nav_bbr_mask: int = BBR_COLD_START
    reset_mode: int = RESET_SW_GNSS_ONLY


@dataclass(frozen=True)
class Poll:
    """Empty-payload poll request for any message kind."""

    msg_id: MsgID


@dataclass(frozen=True)
class UnknownMessage:
    """Any message kind this codec does not interpret."""

    msg_id: MsgID
    payload: bytes


# Union of decoded/encodable messages (use isinstance() or match/case to check which)
Message = (
    AckAck
    | AckNak
    | NavPvt
    | NavPosllh
    | NavStatus
    | NavSat
    | NavSvinfo
    | MonVer
    | CfgMsg
    | CfgRate
    | CfgRst
    | Poll
    | UnknownMessage
)


# ============================================================================
# Payload Parsers
# ============================================================================

_NAV_PVT_FMT = "<IHBBBBBBIiBBBBiiiiIIiiiiiIIH6s"  # 84 bytes, protocol 14 layout
_NAV_PVT_TAIL_FMT = "<ihH"  # 8 bytes, protocol 15+
_NAV_POSLLH_FMT = "<IiiiiII"
_NAV_STATUS_FMT = "<IBBBBII"
_NAV_SAT_HDR_FMT = "<IBB2x"
_NAV_SAT_SV_FMT = "<BBBbhhI"
_NAV_SVINFO_HDR_FMT = "<IBB2x"
_NAV_SVINFO_CH_FMT = "<BBBBBbhi"

NAV_PVT_LEN = struct.calcsize(_NAV_PVT_FMT) + struct.calcsize(_NAV_PVT_TAIL_FMT)


def _require(name: str, payload: bytes, size: int) -> None:
    if len(payload) < size:
        raise DecodeError(f"{name} payload too short: {len(payload)} bytes, expected {size}")


def _cstr(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def _fixed_str(value: str, size: int) -> bytes:
    # Always leave room for the terminating NUL
    return value.encode("ascii", errors="replace")[: size - 1].ljust(size, b"\x00")


def parse_ack_ack(payload: bytes) -> AckAck:
    """Parse ACK-ACK payload (2 bytes)."""
    _require("ACK-ACK", payload, 2)
    return AckAck(ack_cls=payload[0], ack_id=payload[1])


def parse_ack_nak(payload: bytes) -> AckNak:
    """Parse ACK-NAK payload (2 bytes)."""
    _require("ACK-NAK", payload, 2)
    return AckNak(ack_cls=payload[0], ack_id=payload[1])


def parse_nav_pvt(payload: bytes) -> NavPvt:
    """Parse NAV-PVT payload (92 bytes, 84 on protocol 14)."""
    _require("NAV-PVT", payload, struct.calcsize(_NAV_PVT_FMT))
    (
        itow, year, month, day, hour, minute, second, valid,
        t_acc, nano, fix_type, flags, flags2, num_sv,
        lon, lat, height, h_msl, h_acc, v_acc,
        vel_n, vel_e, vel_d, g_speed, head_mot, s_acc, head_acc,
        p_dop, reserved1,
    ) = struct.unpack_from(_NAV_PVT_FMT, payload)
    head_veh, mag_dec, mag_acc = 0, 0, 0
    if len(payload) >= NAV_PVT_LEN:
        head_veh, mag_dec, mag_acc = struct.unpack_from(
            _NAV_PVT_TAIL_FMT, payload, struct.calcsize(_NAV_PVT_FMT)
        )
    return NavPvt(
        itow=itow, year=year, month=month, day=day, hour=hour, minute=minute,
        second=second, valid=valid, t_acc=t_acc, nano=nano, fix_type=fix_type,
        flags=flags, flags2=flags2, num_sv=num_sv, lon=lon, lat=lat, height=height,
        h_msl=h_msl, h_acc=h_acc, v_acc=v_acc, vel_n=vel_n, vel_e=vel_e, vel_d=vel_d,
        g_speed=g_speed, head_mot=head_mot, s_acc=s_acc, head_acc=head_acc,
        p_dop=p_dop, reserved1=reserved1, head_veh=head_veh, mag_dec=mag_dec,
        mag_acc=mag_acc,
    )


def parse_nav_posllh(payload: bytes) -> NavPosllh:
    """Parse NAV-POSLLH payload (28 bytes)."""
    _require("NAV-POSLLH", payload, 28)
    itow, lon, lat, height, h_msl, h_acc, v_acc = struct.unpack_from(_NAV_POSLLH_FMT, payload)
    return NavPosllh(
        itow=itow, lon=lon, lat=lat, height=height, h_msl=h_msl, h_acc=h_acc, v_acc=v_acc
    )


def parse_nav_status(payload: bytes) -> NavStatus:
    """Parse NAV-STATUS payload (16 bytes)."""
    _require("NAV-STATUS", payload, 16)
    itow, gps_fix, flags, fix_stat, flags2, ttff, msss = struct.unpack_from(
        _NAV_STATUS_FMT, payload
    )
    return NavStatus(
        itow=itow, gps_fix=gps_fix, flags=flags, fix_stat=fix_stat,
        flags2=flags2, ttff=ttff, msss=msss,
    )


def parse_nav_sat(payload: bytes) -> NavSat:
    """Parse NAV-SAT payload (8 + 12*numSvs bytes)."""
    _require("NAV-SAT", payload, 8)
    itow, version, num_svs = struct.unpack_from(_NAV_SAT_HDR_FMT, payload)
    _require("NAV-SAT", payload, 8 + 12 * num_svs)
    satellites = tuple(
        SatInfo(*struct.unpack_from(_NAV_SAT_SV_FMT, payload, 8 + 12 * n))
        for n in range(num_svs)
    )
    return NavSat(itow=itow, version=version, satellites=satellites)


def parse_nav_svinfo(payload: bytes) -> NavSvinfo:
    """Parse NAV-SVINFO payload (8 + 12*numCh bytes)."""
    _require("NAV-SVINFO", payload, 8)
    itow, num_ch, global_flags = struct.unpack_from(_NAV_SVINFO_HDR_FMT, payload)
    _require("NAV-SVINFO", payload, 8 + 12 * num_ch)
    channels = tuple(
        SvChannel(*struct.unpack_from(_NAV_SVINFO_CH_FMT, payload, 8 + 12 * n))
        for n in range(num_ch)
    )
    return NavSvinfo(itow=itow, global_flags=global_flags, channels=channels)


def parse_mon_ver(payload: bytes) -> MonVer:
    """Parse MON-VER response payload (40 + 30*N bytes)."""
    _require("MON-VER", payload, MON_VER_SW_LEN + MON_VER_HW_LEN)
    sw_version = _cstr(payload[:MON_VER_SW_LEN])
    hw_version = _cstr(payload[MON_VER_SW_LEN : MON_VER_SW_LEN + MON_VER_HW_LEN])
    extensions = []
    pos = MON_VER_SW_LEN + MON_VER_HW_LEN
    while pos + MON_VER_EXT_LEN <= len(payload):
        extensions.append(_cstr(payload[pos : pos + MON_VER_EXT_LEN]))
        pos += MON_VER_EXT_LEN
    return MonVer(sw_version=sw_version, hw_version=hw_version, extensions=tuple(extensions))


def parse_cfg_msg(payload: bytes) -> CfgMsg:
    """Parse CFG-MSG payload (2, 3 or 8 bytes)."""
    if len(payload) not in (2, 3, 8):
        raise DecodeError(f"CFG-MSG payload has invalid length: {len(payload)} bytes")
    return CfgMsg(target_cls=payload[0], target_id=payload[1], rates=tuple(payload[2:]))


def parse_cfg_rate(payload: bytes) -> CfgRate:
    """Parse CFG-RATE payload (6 bytes)."""
    _require("CFG-RATE", payload, 6)
    meas_rate, nav_rate, time_ref = struct.unpack_from("<HHH", payload)
    return CfgRate(meas_rate=meas_rate, nav_rate=nav_rate, time_ref=time_ref)


def parse_cfg_rst(payload: bytes) -> CfgRst:
    """Parse CFG-RST payload (4 bytes)."""
    _require("CFG-RST", payload, 4)
    nav_bbr_mask, reset_mode = struct.unpack_from("<HBx", payload)
    return CfgRst(nav_bbr_mask=nav_bbr_mask, reset_mode=reset_mode)


_DECODERS: dict[MsgID, Callable[[bytes], Message]] = {
    ACK_ACK: parse_ack_ack,
    ACK_NAK: parse_ack_nak,
    NAV_PVT: parse_nav_pvt,
    NAV_POSLLH: parse_nav_posllh,
    NAV_STATUS: parse_nav_status,
    NAV_SAT: parse_nav_sat,
    NAV_SVINFO: parse_nav_svinfo,
    MON_VER: parse_mon_ver,
    CFG_MSG: parse_cfg_msg,
    CFG_RATE: parse_cfg_rate,
    CFG_RST: parse_cfg_rst,
}


def decode(msg_id: MsgID, payload: bytes) -> Message:
    """Decode one frame's payload given its class/id.

    Raises DecodeError if the payload does not fit the message kind.
    """
    if not payload:
        return Poll(msg_id)
    parser = _DECODERS.get(msg_id)
    if parser is None:
        return UnknownMessage(msg_id, bytes(payload))
    return parser(bytes(payload))


# ============================================================================
# Payload Builders
# ============================================================================


def build_payload(msg: Message) -> bytes:
    """Build the payload bytes of a message."""
    match msg:
        case AckAck() | AckNak():
            return struct.pack("<BB", msg.ack_cls, msg.ack_id)
        case NavPvt():
            return struct.pack(
                _NAV_PVT_FMT + _NAV_PVT_TAIL_FMT[1:],
                msg.itow, msg.year, msg.month, msg.day, msg.hour, msg.minute,
                msg.second, msg.valid, msg.t_acc, msg.nano, msg.fix_type,
                msg.flags, msg.flags2, msg.num_sv, msg.lon, msg.lat, msg.height,
                msg.h_msl, msg.h_acc, msg.v_acc, msg.vel_n, msg.vel_e, msg.vel_d,
                msg.g_speed, msg.head_mot, msg.s_acc, msg.head_acc, msg.p_dop,
                msg.reserved1, msg.head_veh, msg.mag_dec, msg.mag_acc,
            )
        case NavPosllh():
            return struct.pack(
                _NAV_POSLLH_FMT,
                msg.itow, msg.lon, msg.lat, msg.height, msg.h_msl, msg.h_acc, msg.v_acc,
            )
        case NavStatus():
            return struct.pack(
                _NAV_STATUS_FMT,
                msg.itow, msg.gps_fix, msg.flags, msg.fix_stat, msg.flags2, msg.ttff, msg.msss,
            )
        case NavSat():
            body = b"".join(
                struct.pack(
                    _NAV_SAT_SV_FMT,
                    sat.gnss_id, sat.sv_id, sat.cno, sat.elev, sat.azim, sat.pr_res, sat.flags,
                )
                for sat in msg.satellites
            )
            return struct.pack(_NAV_SAT_HDR_FMT, msg.itow, msg.version, len(msg.satellites)) + body
        case NavSvinfo():
            body = b"".join(
                struct.pack(
                    _NAV_SVINFO_CH_FMT,
                    ch.chn, ch.sv_id, ch.flags, ch.quality, ch.cno, ch.elev, ch.azim, ch.pr_res,
                )
                for ch in msg.channels
            )
            return (
                struct.pack(_NAV_SVINFO_HDR_FMT, msg.itow, len(msg.channels), msg.global_flags)
                + body
            )
        case MonVer():
            return (
                _fixed_str(msg.sw_version, MON_VER_SW_LEN)
                + _fixed_str(msg.hw_version, MON_VER_HW_LEN)
                + b"".join(_fixed_str(ext, MON_VER_EXT_LEN) for ext in msg.extensions)
            )
        case CfgMsg():
            if len(msg.rates) not in (0, 1, 6):
                raise ValueError(f"CFG-MSG takes 0, 1 or 6 rates, got {len(msg.rates)}")
            return bytes([msg.target_cls, msg.target_id, *msg.rates])
        case CfgRate():
            return struct.pack("<HHH", msg.meas_rate, msg.nav_rate, msg.time_ref)
        case CfgRst():
            return struct.pack("<HBB", msg.nav_bbr_mask, msg.reset_mode, 0)
        case Poll():
            return b""
        case UnknownMessage():
            return msg.payload
    raise TypeError(f"not a UBX message: {msg!r}")


def encode(msg: Message) -> bytes:
    """Encode a typed message into a complete UBX frame."""
    return pack_msg(msg.msg_id.cls, msg.msg_id.id, build_payload(msg))
