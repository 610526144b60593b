import socket
import struct
from unittest import mock

import pytest

from garycan.canbus import (
    AF_CAN,
    CAN_FRAME_SIZE,
    CAN_RAW,
    CAN_RAW_FILTER,
    SOL_CAN_RAW,
    CanFrame,
    CanSocketError,
    open_raw_socket,
)


@pytest.fixture
def factory():
    with mock.patch("socket.socket") as fake:
        yield fake


def test_pack_wire_layout_little_endian():
    assert CanFrame(0x123, b"\x01\x02").pack() == (
        b"\x23\x01\x00\x00\x02\x00\x00\x00\x01\x02" + b"\x00" * 6
    )


def test_pack_length_is_frame_size():
    assert len(CanFrame(0x7FF, b"abcdefgh").pack()) == CAN_FRAME_SIZE


@pytest.mark.parametrize(
    "frame",
    [CanFrame(0), CanFrame(0x200, b"\xff"), CanFrame(0x7FF, bytes(range(8)))],
)
def test_round_trip(frame):
    assert CanFrame.from_bytes(frame.pack()) == frame


def test_dlc_matches_data_length():
    frame = CanFrame(0x10, bytearray(b"xyz"))
    assert frame.dlc == len(b"xyz")
    assert frame.data == b"xyz"


def test_from_bytes_drops_bytes_beyond_dlc():
    raw = bytearray(CanFrame(0x1, b"\x01").pack())
    raw[-1] = 0xAA
    assert CanFrame.from_bytes(bytes(raw)).data == b"\x01"


def test_too_much_data_rejected():
    with pytest.raises(ValueError):
        CanFrame(0x1, b"123456789")


def test_negative_id_rejected():
    with pytest.raises(ValueError):
        CanFrame(-1)


def test_from_bytes_wrong_length():
    with pytest.raises(ValueError):
        CanFrame.from_bytes(b"\x00" * 3)


def test_from_bytes_bad_dlc():
    raw = bytearray(CanFrame(0x1).pack())
    raw[4] = 9
    with pytest.raises(ValueError):
        CanFrame.from_bytes(bytes(raw))


def test_open_raw_socket_configures_socket(factory):
    sock = open_raw_socket("vcan0", [(0x123, 0x7FF)])
    assert sock is factory.return_value
    factory.assert_called_once_with(AF_CAN, socket.SOCK_RAW, CAN_RAW)
    sock.bind.assert_called_once_with(("vcan0",))
    level, option, value = sock.setsockopt.call_args.args
    assert (level, option) == (SOL_CAN_RAW, CAN_RAW_FILTER)
    assert struct.unpack("=II", value) == (0x123, 0x7FF)
    sock.setblocking.assert_called_once_with(False)


def test_open_raw_socket_without_filters(factory):
    sock = open_raw_socket("vcan0", [])
    assert sock.setsockopt.call_args.args[2] == b""


def test_open_raw_socket_bind_failure_closes(factory):
    sock = factory.return_value
    sock.bind.side_effect = OSError(19, "No such device")
    with pytest.raises(CanSocketError):
        open_raw_socket("vcan9", [])
    sock.close.assert_called_once_with()


def test_open_raw_socket_rejects_long_name(factory):
    with pytest.raises(CanSocketError):
        open_raw_socket("x" * 20, [])
    factory.assert_not_called()