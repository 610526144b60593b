"""Periodic health diagnostics for SocketCAN buses."""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import socket
import time
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from garycan.canbus import CanSocketError, open_raw_socket
from garycan.netlink import CanBitTiming, CanState, get_bittiming, get_can_state
from garycan.rcvlist import RecvInfo, read_rcvlist

logger = logging.getLogger(__name__)

# Bits assumed per frame on the wire when estimating bus load.
_PACKET_LEN = 110
_THROTTLE_SECONDS = 1.0


class DiagnosticLevel(IntEnum):
    """Severity of a diagnostic status."""

    OK = 0
    WARN = 1
    ERROR = 2
    STALE = 3


@dataclass
class KeyValue:
    """A named value attached to a diagnostic status."""

    key: str
    value: str


@dataclass
class DiagnosticStatus:
    """The health report of one bus."""

    name: str
    hardware_id: str
    level: DiagnosticLevel = DiagnosticLevel.OK
    message: str = ""
    values: List[KeyValue] = field(default_factory=list)


@dataclass
class DiagnosticArray:
    """The reports of all monitored buses at one moment."""

    status: List[DiagnosticStatus] = field(default_factory=list)
    stamp: float = 0.0
    frame_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MonitorConfig:
    """Monitor parameters."""

    diagnose_topic: str = "/diagnostics"
    update_freq: float = 10.0
    monitored_can_bus: Tuple[str, ...] = ()
    overload_threshold: float = 0.8

    def __post_init__(self) -> None:
        object.__setattr__(self, "monitored_can_bus", tuple(self.monitored_can_bus))
        if not self.update_freq > 0:
            raise ValueError(f"update_freq must be positive, got {self.update_freq}")


Publisher = Callable[[str, DiagnosticArray], None]


class _Lifecycle(Enum):
    UNCONFIGURED = "unconfigured"
    INACTIVE = "inactive"
    ACTIVE = "active"
    FINALIZED = "finalized"


def _print_publisher(topic: str, array: DiagnosticArray) -> None:
    print(json.dumps({"topic": topic, **array.to_dict()}), flush=True)


def _bus_load(delta_pkt: int, bitrate: int, update_freq: float) -> float:
    bits = float(delta_pkt) * _PACKET_LEN
    capacity = bitrate / update_freq
    if capacity == 0:
        return math.nan if bits == 0 else math.copysign(math.inf, bits)
    return bits / capacity


class SocketCANMonitor:
    """Watches CAN buses and publishes a diagnostic report on each update."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        publisher: Optional[Publisher] = None,
        state_reader: Callable[[str], CanState] = get_can_state,
        bittiming_reader: Callable[[str], CanBitTiming] = get_bittiming,
        rcvlist_dir: Union[str, "os.PathLike[str]"] = "/proc/net/can",
    ) -> None:
        self.config = config if config is not None else MonitorConfig()
        self._publisher = publisher if publisher is not None else _print_publisher
        self._state_reader = state_reader
        self._bittiming_reader = bittiming_reader
        self._rcvlist_dir = Path(rcvlist_dir)
        self._lifecycle = _Lifecycle.UNCONFIGURED
        self._sockets: Dict[str, socket.socket] = {}
        self._last_recv_cnt: Dict[str, int] = {}
        self._offline: Dict[str, bool] = {}
        self._last_filter_cnt: Dict[str, Dict[int, int]] = {}
        self._last_warning: Dict[Tuple[str, str], float] = {}

    def _require(self, expected: _Lifecycle, transition: str) -> None:
        if self._lifecycle is not expected:
            raise RuntimeError(
                f"cannot {transition} while {self._lifecycle.value}"
            )

    def configure(self, config: Optional[MonitorConfig] = None) -> None:
        """Apply parameters; moves the monitor from unconfigured to inactive."""
        self._require(_Lifecycle.UNCONFIGURED, "configure")
        if config is not None:
            self.config = config
        if not self.config.monitored_can_bus:
            logger.warning("no can bus is monitored")
        self._lifecycle = _Lifecycle.INACTIVE
        logger.info("configured")

    def activate(self) -> None:
        """Start publishing and open a socket on every monitored bus."""
        self._require(_Lifecycle.INACTIVE, "activate")
        for bus in self.config.monitored_can_bus:
            self._open_socket(bus)
        self._lifecycle = _Lifecycle.ACTIVE
        logger.info("activated")

    def deactivate(self) -> None:
        """Stop publishing."""
        self._require(_Lifecycle.ACTIVE, "deactivate")
        self._lifecycle = _Lifecycle.INACTIVE
        logger.info("deactivated")

    def cleanup(self) -> None:
        """Release resources; moves the monitor back to unconfigured."""
        self._require(_Lifecycle.INACTIVE, "clean up")
        self._close_sockets()
        self._lifecycle = _Lifecycle.UNCONFIGURED
        logger.info("cleaning up")

    def shutdown(self) -> None:
        """Release resources for good."""
        if self._lifecycle is _Lifecycle.FINALIZED:
            raise RuntimeError("already shut down")
        self._close_sockets()
        self._lifecycle = _Lifecycle.FINALIZED
        logger.info("shutdown")

    def _close_sockets(self) -> None:
        for sock in self._sockets.values():
            sock.close()
        self._sockets.clear()

    def _open_socket(self, ifname: str) -> bool:
        old = self._sockets.pop(ifname, None)
        if old is not None:
            old.close()
        try:
            # A socket with an accept-all filter keeps the bus in the receive list.
            self._sockets[ifname] = open_raw_socket(ifname, [(0, 0)])
        except CanSocketError as exc:
            logger.debug("%s", exc)
            return False
        logger.debug("[%s] create socket successful", ifname)
        return True

    def _warn_throttled(self, bus: str, message: str, *args: object) -> None:
        now = time.monotonic()
        key = (bus, message)
        last = self._last_warning.get(key)
        if last is None or now - last >= _THROTTLE_SECONDS:
            self._last_warning[key] = now
            logger.warning(message, *args)

    def _read_rcvlist(self, name: str) -> List[RecvInfo]:
        path = self._rcvlist_dir / name
        try:
            return read_rcvlist(path)
        except OSError as exc:
            logger.debug("failed to read %s: %s", path, exc)
            return []

    def _diagnose(
        self, bus: str, rcvlist_all: List[RecvInfo], rcvlist_fil: List[RecvInfo]
    ) -> DiagnosticStatus:
        status = DiagnosticStatus(name=bus, hardware_id=bus)
        freq = self.config.update_freq

        delta_pkt = 0
        found = False
        for info in rcvlist_all:
            if info.device == bus:
                delta_pkt = info.matches - self._last_recv_cnt.get(bus, 0)
                found = True
                self._last_recv_cnt[bus] = info.matches
        if not found:
            self._last_recv_cnt[bus] = 0
            self._open_socket(bus)
            status.level = DiagnosticLevel.ERROR
            status.message = "offline"
            if not self._offline.get(bus):
                logger.error("[%s] can bus offline", bus)
            self._offline[bus] = True
            return status
        if self._offline.get(bus):
            logger.error("[%s] can bus online", bus)
        self._offline[bus] = False

        state: Optional[int]
        try:
            state = self._state_reader(bus)
        except (OSError, ValueError) as exc:
            logger.debug("[%s] failed to get state: %s", bus, exc)
            state = None
        if state is not None and state > CanState.ERROR_ACTIVE:
            status.level = DiagnosticLevel.WARN
            status.message = "transmission jammed"
            self._warn_throttled(bus, "[%s] transmission jammed, state %d", bus, int(state))
            return status

        try:
            bittiming = self._bittiming_reader(bus)
        except (OSError, ValueError):
            self._warn_throttled(bus, "[%s] failed to get bitrate", bus)
            status.level = DiagnosticLevel.WARN
            status.message = "failed to get bitrate"
            return status

        load = _bus_load(delta_pkt, bittiming.bitrate, freq)
        if load > self.config.overload_threshold:
            status.level = DiagnosticLevel.WARN
            status.message = "can bus overload"
            self._warn_throttled(bus, "[%s] can bus overload %f", bus, load)
            return status

        status.level = DiagnosticLevel.OK
        status.message = "ok"
        logger.debug(
            "[%s] delta pkt %d, bitrate %d, load %f state %s",
            bus, delta_pkt, bittiming.bitrate, load, state,
        )
        status.values.append(KeyValue("bus_load", f"{load:f}"))

        per_id = self._last_filter_cnt.setdefault(bus, {})
        for info in rcvlist_fil:
            if info.device == bus:
                delta = info.matches - per_id.get(info.can_id, 0)
                per_id[info.can_id] = info.matches
                status.values.append(KeyValue(f"id_{info.can_id}_freq", f"{delta * freq:f}"))
        return status

    def update(self) -> Optional[DiagnosticArray]:
        """Check every monitored bus; publish and return the report.

        Returns None when no bus is monitored. The report is published only
        while the monitor is active.
        """
        logger.debug("update")
        if not self.config.monitored_can_bus:
            return None
        rcvlist_all = self._read_rcvlist("rcvlist_all")
        rcvlist_fil = self._read_rcvlist("rcvlist_fil")
        array = DiagnosticArray(
            status=[
                self._diagnose(bus, rcvlist_all, rcvlist_fil)
                for bus in self.config.monitored_can_bus
            ]
        )
        array.stamp = time.time()
        if self._lifecycle is _Lifecycle.ACTIVE:
            self._publisher(self.config.diagnose_topic, array)
        return array

    def run(self, iterations: Optional[int] = None) -> int:
        """Update at ``update_freq`` while active; return the number of updates."""
        self._require(_Lifecycle.ACTIVE, "run")
        period = 1.0 / self.config.update_freq
        count = 0
        deadline = time.monotonic() + period
        while self._lifecycle is _Lifecycle.ACTIVE and (iterations is None or count < iterations):
            delay = deadline - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            self.update()
            count += 1
            deadline += period
        return count


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the monitor, printing each report as a JSON line."""
    parser = argparse.ArgumentParser(
        prog="socket_can_monitor", description="Publish SocketCAN bus diagnostics."
    )
    parser.add_argument("--diagnose-topic", default="/diagnostics")
    parser.add_argument("--update-freq", type=float, default=10.0)
    parser.add_argument("--bus", action="append", dest="monitored_can_bus", default=[])
    parser.add_argument("--overload-threshold", type=float, default=0.8)
    parser.add_argument("--rcvlist-dir", default="/proc/net/can")
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        config = MonitorConfig(
            diagnose_topic=args.diagnose_topic,
            update_freq=args.update_freq,
            monitored_can_bus=tuple(args.monitored_can_bus),
            overload_threshold=args.overload_threshold,
        )
    except ValueError as exc:
        parser.error(str(exc))

    monitor = SocketCANMonitor(config, publisher=_print_publisher, rcvlist_dir=args.rcvlist_dir)
    monitor.configure()
    monitor.activate()
    try:
        monitor.run(args.iterations)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.shutdown()
    return 0