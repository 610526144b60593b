"""Receiving CAN frames, one filtered socket per frame id."""

from __future__ import annotations

import errno
import logging
import socket
from typing import Dict, Optional

from garycan.canbus import (
    CAN_FRAME_SIZE,
    CAN_SFF_MASK,
    CanFrame,
    CanSocketError,
    LinkDownError,
    open_raw_socket,
)

logger = logging.getLogger(__name__)


class SocketCANReceiver:
    """Reads frames from one CAN interface, each id through its own socket."""

    def __init__(self, ifname: str) -> None:
        self.ifname = ifname
        self.is_opened: Dict[int, bool] = {}
        self._sockets: Dict[int, socket.socket] = {}

    def open_socket(self, frame_id: int) -> None:
        """Open a socket that receives only ``frame_id``."""
        old = self._sockets.pop(frame_id, None)
        if old is not None and self.is_opened.get(frame_id):
            old.close()
        self.is_opened.pop(frame_id, None)
        sock = open_raw_socket(self.ifname, [(frame_id, CAN_SFF_MASK)])
        self._sockets[frame_id] = sock
        self.is_opened[frame_id] = True

    def read(self, frame_id: int) -> Optional[CanFrame]:
        """Return the next frame for ``frame_id``, or None if none is waiting."""
        sock = self._sockets.get(frame_id)
        if sock is None:
            raise CanSocketError(f"[{self.ifname}] unbound id {frame_id:#x}")
        if not self.is_opened.get(frame_id):
            raise CanSocketError(f"[{self.ifname}] socket is closed, id {frame_id:#x}")
        try:
            raw = sock.recv(CAN_FRAME_SIZE)
        except BlockingIOError:
            return None
        except OSError as exc:
            if exc.errno == errno.ENODEV:
                logger.debug("[%s] link is down, id %#x", self.ifname, frame_id)
                self.is_opened[frame_id] = False
                sock.close()
                raise LinkDownError(f"[{self.ifname}] link is down, id {frame_id:#x}") from exc
            raise CanSocketError(f"[{self.ifname}] failed to read id {frame_id:#x}: {exc}") from exc
        if len(raw) != CAN_FRAME_SIZE:
            raise CanSocketError(
                f"[{self.ifname}] attempted to read {CAN_FRAME_SIZE} bytes, {len(raw)} read"
            )
        frame = CanFrame.from_bytes(raw)
        logger.debug("[%s] read successful, id %#x, dlc %d", self.ifname, frame_id, frame.dlc)
        return frame

    def close(self) -> None:
        """Close every open socket."""
        for frame_id, sock in self._sockets.items():
            if self.is_opened.get(frame_id):
                logger.debug("[%s] closing socket for id %#x", self.ifname, frame_id)
                sock.close()
                self.is_opened[frame_id] = False

    def __enter__(self) -> "SocketCANReceiver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()