"""Reading CAN controller state and bit timing over rtnetlink."""

from __future__ import annotations

import logging
import os
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional, Tuple

from garycan.canbus import IFNAMSIZ, CanSocketError

logger = logging.getLogger(__name__)

AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
NETLINK_ROUTE = getattr(socket, "NETLINK_ROUTE", 0)

NLMSG_ERROR = 2
NLMSG_DONE = 3
RTM_NEWLINK = 16
RTM_GETLINK = 18
NLM_F_REQUEST = 0x1
NLM_F_DUMP = 0x300

IFLA_IFNAME = 3
IFLA_LINKINFO = 18
IFLA_INFO_KIND = 1
IFLA_INFO_DATA = 2
IFLA_CAN_BITTIMING = 1
IFLA_CAN_STATE = 4

_NLA_TYPE_MASK = 0x3FFF
_NLMSGHDR = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BxHiII")
_RTATTR = struct.Struct("=HH")
_U32 = struct.Struct("=I")
_I32 = struct.Struct("=i")
_BITTIMING = struct.Struct("=8I")
_LINK_HEADER_SIZE = _NLMSGHDR.size + _IFINFOMSG.size
_RECV_SIZE = 65536


class CanState(IntEnum):
    """Controller error state as reported by the kernel."""

    ERROR_ACTIVE = 0
    ERROR_WARNING = 1
    ERROR_PASSIVE = 2
    BUS_OFF = 3
    STOPPED = 4
    SLEEPING = 5


@dataclass(frozen=True)
class CanBitTiming:
    """Bit timing of a CAN controller."""

    bitrate: int
    sample_point: int = 0
    tq: int = 0
    prop_seg: int = 0
    phase_seg1: int = 0
    phase_seg2: int = 0
    sjw: int = 0
    brp: int = 0


def _align(length: int) -> int:
    return (length + 3) & ~3


def _attributes(data: bytes) -> Iterator[Tuple[int, bytes]]:
    offset = 0
    while offset + _RTATTR.size <= len(data):
        length, kind = _RTATTR.unpack_from(data, offset)
        if length < _RTATTR.size or offset + length > len(data):
            raise ValueError("malformed netlink attribute")
        yield kind & _NLA_TYPE_MASK, data[offset + _RTATTR.size : offset + length]
        offset += _align(length)


def _split_messages(buf: bytes) -> Iterator[bytes]:
    offset = 0
    while offset < len(buf):
        if offset + _NLMSGHDR.size > len(buf):
            raise ValueError("truncated netlink header")
        length = _NLMSGHDR.unpack_from(buf, offset)[0]
        if length < _NLMSGHDR.size or offset + length > len(buf):
            raise ValueError("malformed netlink message")
        yield buf[offset : offset + length]
        offset += _align(length)


def _cstring(payload: bytes) -> bytes:
    return payload.split(b"\0", 1)[0]


def _parse_linkinfo(payload: bytes) -> Tuple[Optional[CanState], Optional[CanBitTiming]]:
    info = dict(_attributes(payload))
    if _cstring(info.get(IFLA_INFO_KIND, b"")) != b"can" or IFLA_INFO_DATA not in info:
        return None, None
    state: Optional[CanState] = None
    bittiming: Optional[CanBitTiming] = None
    for kind, value in _attributes(info[IFLA_INFO_DATA]):
        if kind == IFLA_CAN_STATE and len(value) >= _U32.size:
            state = CanState(_U32.unpack_from(value)[0])
        elif kind == IFLA_CAN_BITTIMING and len(value) >= _BITTIMING.size:
            bittiming = CanBitTiming(*_BITTIMING.unpack_from(value))
    return state, bittiming


def parse_link_message(
    data: bytes,
) -> Tuple[str, Optional[CanState], Optional[CanBitTiming]]:
    """Decode one RTM_NEWLINK message into (ifname, state, bit timing).

    State and bit timing are None where the link is not a CAN device or
    the kernel did not report them.
    """
    data = bytes(data)
    if len(data) < _NLMSGHDR.size:
        raise ValueError("truncated netlink header")
    length, msg_type, _flags, _seq, _pid = _NLMSGHDR.unpack_from(data)
    if length > len(data) or length < _LINK_HEADER_SIZE:
        raise ValueError("malformed link message")
    if msg_type != RTM_NEWLINK:
        raise ValueError(f"not a link message: type {msg_type}")
    ifname: Optional[str] = None
    state: Optional[CanState] = None
    bittiming: Optional[CanBitTiming] = None
    for kind, payload in _attributes(data[_LINK_HEADER_SIZE:length]):
        if kind == IFLA_IFNAME:
            ifname = _cstring(payload).decode(errors="replace")
        elif kind == IFLA_LINKINFO:
            state, bittiming = _parse_linkinfo(payload)
    if ifname is None:
        raise ValueError("link message carries no interface name")
    return ifname, state, bittiming


def _find_link(
    sock: socket.socket, ifname: str
) -> Optional[Tuple[Optional[CanState], Optional[CanBitTiming]]]:
    found = None
    while True:
        buf = sock.recv(_RECV_SIZE)
        if not buf:
            return found
        for message in _split_messages(buf):
            msg_type = _NLMSGHDR.unpack_from(message)[1]
            if msg_type == NLMSG_DONE:
                return found
            if msg_type == NLMSG_ERROR:
                if len(message) >= _NLMSGHDR.size + _I32.size:
                    err = _I32.unpack_from(message, _NLMSGHDR.size)[0]
                    if err:
                        raise OSError(-err, os.strerror(-err))
                continue
            if msg_type == RTM_NEWLINK:
                name, state, bittiming = parse_link_message(message)
                if name == ifname:
                    found = (state, bittiming)


def _query_link(ifname: str) -> Tuple[Optional[CanState], Optional[CanBitTiming]]:
    if not ifname or len(ifname.encode()) >= IFNAMSIZ:
        raise CanSocketError(f"invalid interface name {ifname!r}")
    request = _NLMSGHDR.pack(
        _LINK_HEADER_SIZE, RTM_GETLINK, NLM_F_REQUEST | NLM_F_DUMP, 1, 0
    ) + _IFINFOMSG.pack(0, 0, 0, 0, 0)
    try:
        with socket.socket(AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE) as sock:
            sock.bind((0, 0))
            sock.send(request)
            found = _find_link(sock, ifname)
    except CanSocketError:
        raise
    except OSError as exc:
        raise CanSocketError(f"[{ifname}] netlink query failed: {exc}") from exc
    if found is None:
        raise CanSocketError(f"[{ifname}] no such interface")
    return found


def get_can_state(ifname: str) -> CanState:
    """Return the controller state of the CAN interface ``ifname``."""
    state, _ = _query_link(ifname)
    if state is None:
        raise CanSocketError(f"[{ifname}] no CAN state reported")
    return state


def get_bittiming(ifname: str) -> CanBitTiming:
    """Return the bit timing of the CAN interface ``ifname``."""
    _, bittiming = _query_link(ifname)
    if bittiming is None:
        raise CanSocketError(f"[{ifname}] no bit timing reported")
    return bittiming