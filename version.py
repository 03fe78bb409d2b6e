"""Protocol version negotiation: identify the receiver generation and subscribe to its messages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from correlator import CommandCorrelator
from ubx import (
    MON_VER,
    NAV_POSLLH,
    NAV_PVT,
    NAV_SAT,
    NAV_STATUS,
    NAV_SVINFO,
    NMEA_MESSAGES,
    CfgMsg,
    MonVer,
    MsgID,
    Poll,
)

PROTVER_PREFIX = "PROTVER"

# Receivers that predate the PROTVER extension, by MON-VER hwVersion
HW_VERSION_PROTOCOLS: dict[str, str] = {
    "00040005": "11.00",  # u-blox 5
    "00040007": "13.00",  # u-blox 6
    "00070000": "14.00",  # u-blox 7
    "00080000": "15.00",  # u-blox M8, firmware without PROTVER
}

# Conservative assumption when nothing identifies the receiver
DEFAULT_PROTOCOL_VERSION = "10.00"

# Message-set thresholds
NAV_PVT_MIN_VERSION = "14.00"
NAV_SAT_MIN_VERSION = "15.00"

_VERSION_RE = re.compile(r"^\d+\.\d+$")


class VersionParseError(ValueError):
    """A PROTVER extension string has an unrecognized format."""


class NegotiationError(RuntimeError):
    """Receiver identification or message subscription failed."""


class VersionRule(Enum):
    """Which resolution rule produced the protocol version."""

    EXTENSION = "extension"  # PROTVER extension string
    HARDWARE = "hardware"  # hwVersion lookup
    DEFAULT = "default"  # fallback


class MessageSet(Enum):
    """Periodic navigation messages to subscribe to, by receiver generation."""

    PVT_SAT = "pvt-sat"  # protocol 15 and later
    PVT_SVINFO = "pvt-svinfo"  # protocol 14 (u-blox 7)
    LEGACY = "legacy"  # u-blox 5/6

    @property
    def messages(self) -> list[MsgID]:
        # NAV-STATUS is always needed for time to first fix
        if self is MessageSet.PVT_SAT:
            return [NAV_PVT, NAV_SAT, NAV_STATUS]
        if self is MessageSet.PVT_SVINFO:
            return [NAV_PVT, NAV_SVINFO, NAV_STATUS]
        return [NAV_POSLLH, NAV_SVINFO, NAV_STATUS]


@dataclass(frozen=True)
class ResolvedVersion:
    version: str
    rule: VersionRule


@dataclass(frozen=True)
class DeviceProfile:
    """What the driver learned about the receiver during negotiation."""

    sw_version: str
    hw_version: str
    protocol_version: str
    rule: VersionRule
    message_set: MessageSet

    def format(self) -> str:
        return (
            f"Receiver: {self.sw_version} / {self.hw_version}\n"
            f"Protocol version: {self.protocol_version} (from {self.rule.value})\n"
            f"Message set: {', '.join(m.name for m in self.message_set.messages)}"
        )


def version_key(version: str) -> tuple[int, int]:
    """Numeric sort key for a 'MM.mm' version string."""
    if not _VERSION_RE.match(version):
        raise VersionParseError(f"invalid protocol version: {version!r}")
    major, minor = version.split(".")
    return int(major), int(minor)


def parse_protver(extension: str) -> str:
    """Extract the version from a PROTVER extension.

    Protocol 17 and older write 'PROTVER 15.00', later ones 'PROTVER=18.00'.
    """
    rest = extension.strip()[len(PROTVER_PREFIX) :]
    if not rest or rest[0] not in "= ":
        raise VersionParseError(f"unrecognized PROTVER extension: {extension!r}")
    version = rest[1:].strip()
    if not _VERSION_RE.match(version):
        raise VersionParseError(f"unrecognized PROTVER extension: {extension!r}")
    return version


def resolve_protocol_version(extensions: list[str] | tuple[str, ...], hw_version: str) -> ResolvedVersion:
    """Resolve the protocol version: PROTVER extension, then hwVersion table, then default."""
    for ext in extensions:
        if ext.strip().startswith(PROTVER_PREFIX):
            return ResolvedVersion(parse_protver(ext), VersionRule.EXTENSION)
    known = HW_VERSION_PROTOCOLS.get(hw_version.strip())
    if known is not None:
        return ResolvedVersion(known, VersionRule.HARDWARE)
    return ResolvedVersion(DEFAULT_PROTOCOL_VERSION, VersionRule.DEFAULT)


def select_message_set(version: str) -> MessageSet:
    key = version_key(version)
    if key >= version_key(NAV_SAT_MIN_VERSION):
        return MessageSet.PVT_SAT
    if key >= version_key(NAV_PVT_MIN_VERSION):
        return MessageSet.PVT_SVINFO
    return MessageSet.LEGACY


def probe_receiver(
    correlator: CommandCorrelator,
    log: logging.Logger,
    attempts: int = 3,
    timeout: float | None = None,
) -> MonVer:
    """Poll MON-VER, retrying on timeout. Raises NegotiationError on failure."""
    for attempt in range(attempts):
        log.debug(f"sending MON-VER query (attempt {attempt + 1}/{attempts})")
        result = correlator.send(Poll(MON_VER), timeout=timeout)
        if result.success and isinstance(result.response, MonVer):
            return result.response
        if result.nak:
            raise NegotiationError("receiver rejected MON-VER query")
        log.debug(f"MON-VER timeout after attempt {attempt + 1}")
    raise NegotiationError(f"no response to MON-VER query after {attempts} attempts")


def disable_nmea_output(correlator: CommandCorrelator, log: logging.Logger) -> None:
    """Switch off standard NMEA sentences on the current port (best effort)."""
    for name, msg_id in NMEA_MESSAGES:
        result = correlator.send(CfgMsg.for_message(msg_id, 0))
        if result.success:
            log.debug(f"NMEA {name} disabled")
        else:
            log.warning(f"failed to disable NMEA {name} ({'NAK' if result.nak else 'timeout'})")


def subscribe(correlator: CommandCorrelator, message_set: MessageSet, log: logging.Logger) -> None:
    """Enable every message of the set at one per navigation solution."""
    for msg_id in message_set.messages:
        result = correlator.send(CfgMsg.for_message(msg_id, 1))
        if not result.success:
            reason = "rejected" if result.nak else "not acknowledged"
            raise NegotiationError(f"subscription to {msg_id.name} {reason}")
        log.debug(f"subscribed to {msg_id.name}")


def negotiate(
    correlator: CommandCorrelator,
    log: logging.Logger | None = None,
    probe_attempts: int = 3,
    disable_nmea: bool = True,
) -> DeviceProfile:
    """Identify the receiver and configure its periodic output.

    The receiver loop must already be running. Raises NegotiationError if the
    receiver cannot be identified, its PROTVER string cannot be parsed or a
    subscription is refused.
    """
    log = log or logging.getLogger("ubxdriver")
    ver = probe_receiver(correlator, log, attempts=probe_attempts)
    try:
        resolved = resolve_protocol_version(ver.extensions, ver.hw_version)
    except VersionParseError as e:
        raise NegotiationError(str(e)) from e
    message_set = select_message_set(resolved.version)
    log.info(
        f"receiver {ver.sw_version} / {ver.hw_version}: protocol {resolved.version} "
        f"(from {resolved.rule.value}), using {message_set.value} messages"
    )

    if disable_nmea:
        disable_nmea_output(correlator, log)
    subscribe(correlator, message_set, log)

    return DeviceProfile(
        sw_version=ver.sw_version,
        hw_version=ver.hw_version,
        protocol_version=resolved.version,
        rule=resolved.rule,
        message_set=message_set,
    )
