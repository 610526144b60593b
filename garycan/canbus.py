"""SocketCAN frame layout and raw socket setup."""

from __future__ import annotations

import logging
import socket
import struct
from dataclasses import dataclass
from typing import Iterable, Tuple

logger = logging.getLogger(__name__)

AF_CAN = getattr(socket, "AF_CAN", 29)
CAN_RAW = getattr(socket, "CAN_RAW", 1)
SOL_CAN_RAW = getattr(socket, "SOL_CAN_RAW", 101)
CAN_RAW_FILTER = getattr(socket, "CAN_RAW_FILTER", 1)

CAN_SFF_MASK = 0x7FF
CAN_MAX_DLEN = 8
IFNAMSIZ = 16

# struct can_frame: can_id, can_dlc, three padding/reserved bytes, data[8]
_FRAME = struct.Struct("=IB3x8s")
CAN_FRAME_SIZE = _FRAME.size
# struct can_filter: can_id, can_mask
_FILTER = struct.Struct("=II")


class CanSocketError(OSError):
    """A CAN socket could not be opened or used."""


class LinkDownError(CanSocketError):
    """The CAN interface went down; the socket has been closed."""


@dataclass(frozen=True)
class CanFrame:
    """A classic CAN frame with up to eight data bytes."""

    can_id: int
    data: bytes = b""

    def __post_init__(self) -> None:
        if not 0 <= self.can_id <= 0xFFFFFFFF:
            raise ValueError(f"CAN id out of range: {self.can_id:#x}")
        data = bytes(self.data)
        if len(data) > CAN_MAX_DLEN:
            raise ValueError(f"CAN frame holds at most {CAN_MAX_DLEN} bytes, got {len(data)}")
        object.__setattr__(self, "data", data)

    @property
    def dlc(self) -> int:
        """Data length code: the number of data bytes."""
        return len(self.data)

    def pack(self) -> bytes:
        """Encode the frame in the kernel's can_frame layout."""
        return _FRAME.pack(self.can_id, self.dlc, self.data)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CanFrame":
        """Decode a frame from the kernel's can_frame layout."""
        if len(data) != CAN_FRAME_SIZE:
            raise ValueError(f"expected {CAN_FRAME_SIZE} bytes, got {len(data)}")
        can_id, dlc, payload = _FRAME.unpack(data)
        if dlc > CAN_MAX_DLEN:
            raise ValueError(f"invalid data length code {dlc}")
        return cls(can_id, payload[:dlc])


def open_raw_socket(ifname: str, filters: Iterable[Tuple[int, int]] = ()) -> socket.socket:
    """Open a non-blocking raw CAN socket bound to ``ifname``.

    ``filters`` is a sequence of ``(can_id, can_mask)`` pairs; an empty
    sequence installs no filter, so the socket receives nothing.
    """
    if not ifname or len(ifname.encode()) >= IFNAMSIZ:
        raise CanSocketError(f"invalid interface name {ifname!r}")

    logger.debug("[%s] creating socket", ifname)
    try:
        sock = socket.socket(AF_CAN, socket.SOCK_RAW, CAN_RAW)
    except OSError as exc:
        raise CanSocketError(f"[{ifname}] failed to create socket: {exc}") from exc

    filter_bytes = b"".join(_FILTER.pack(can_id, mask) for can_id, mask in filters)
    try:
        logger.debug("[%s] binding", ifname)
        sock.bind((ifname,))
        logger.debug("[%s] setting can filter", ifname)
        sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FILTER, filter_bytes)
        logger.debug("[%s] setting nonblocking mode", ifname)
        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        raise CanSocketError(f"[{ifname}] failed to set up socket: {exc}") from exc
    return sock