"""Sending CAN frames over a raw SocketCAN socket."""

from __future__ import annotations

import errno
import logging
import socket
from typing import Optional

from garycan.canbus import (
    CAN_FRAME_SIZE,
    CanFrame,
    CanSocketError,
    LinkDownError,
    open_raw_socket,
)

logger = logging.getLogger(__name__)


class SocketCANSender:
    """Writes frames to one CAN interface."""

    def __init__(self, ifname: str) -> None:
        self.ifname = ifname
        self._socket: Optional[socket.socket] = None

    @property
    def is_opened(self) -> bool:
        return self._socket is not None

    def open_socket(self, ifname: Optional[str] = None) -> None:
        """Open the socket, optionally switching to another interface first."""
        if ifname is not None:
            self.ifname = ifname
        self.close()
        # Receiving is disabled: no filter is installed.
        self._socket = open_raw_socket(self.ifname, ())

    def send(self, frame: CanFrame) -> None:
        """Write one frame; raise CanSocketError if it was not sent whole."""
        if self._socket is None:
            raise CanSocketError(f"[{self.ifname}] socket is not opened")
        try:
            written = self._socket.send(frame.pack())
        except OSError as exc:
            if exc.errno == errno.ENXIO:
                logger.debug("[%s] link is down", self.ifname)
                self.close()
                raise LinkDownError(f"[{self.ifname}] link is down") from exc
            raise CanSocketError(f"[{self.ifname}] failed to write: {exc}") from exc
        if written != CAN_FRAME_SIZE:
            raise CanSocketError(
                f"[{self.ifname}] attempted to write {CAN_FRAME_SIZE} bytes, {written} written"
            )
        logger.debug("[%s] send successful, id %#x, dlc %d", self.ifname, frame.can_id, frame.dlc)

    def close(self) -> None:
        """Close the socket if it is open."""
        if self._socket is not None:
            logger.debug("[%s] closing socket", self.ifname)
            self._socket.close()
            self._socket = None

    def __enter__(self) -> "SocketCANSender":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()