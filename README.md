# garycan

Tools for talking to Linux SocketCAN interfaces and watching their health.

- `SocketCANSender` (`garycan.sender`) opens a raw CAN socket on one
  interface and sends frames.
- `SocketCANReceiver` (`garycan.receiver`) opens one filtered socket per CAN
  identifier and reads frames for that identifier without blocking.
- `SocketCANMonitor` (`garycan.monitor`) checks every watched bus on each
  update. It reports a bus as offline, jammed, overloaded or healthy. For a
  healthy bus it also reports the load and the rate seen by each receive
  filter.

Linux with SocketCAN support is required.

## Installation

```
pip install garycan
```

To run the tests:

```
pip install "garycan[test]"
pytest
```

## Frames

`garycan.canbus.CanFrame` is a frozen dataclass with a `can_id` (0 to
0xFFFFFFFF) and up to eight bytes of `data`. Its `dlc` property is the number
of data bytes. Anything out of range raises `ValueError`.

- `CanFrame.pack()` returns the 16-byte kernel `can_frame` layout.
- `CanFrame.from_bytes(data)` decodes that layout. It raises `ValueError` on
  the wrong length or a data length code above 8.

`open_raw_socket(ifname, filters)` opens a non-blocking raw CAN socket bound
to an interface. `filters` is a sequence of `(can_id, can_mask)` pairs. An
empty sequence installs no filter, so the socket receives nothing. Failures
raise `CanSocketError`, which is a subclass of `OSError`.

## Sending frames

```python
from garycan.canbus import CanFrame
from garycan.sender import SocketCANSender

with SocketCANSender("can0") as sender:
    sender.open_socket()
    sender.send(CanFrame(can_id=0x200, data=bytes([1, 2, 3, 4])))
```

`open_socket(ifname)` can switch to another interface before opening.
`is_opened` tells whether a socket is open.

`send` raises `CanSocketError` in three cases: the socket is not open, the
write fails, or the frame was not written whole. If the link is down
(`ENXIO`), the socket is closed and `LinkDownError` is raised.
`LinkDownError` is a subclass of `CanSocketError`.

## Receiving frames

```python
from garycan.receiver import SocketCANReceiver

with SocketCANReceiver("can0") as receiver:
    receiver.open_socket(0x201)
    frame = receiver.read(0x201)   # None when nothing is waiting
    if frame is not None:
        print(hex(frame.can_id), frame.data.hex())
```

Each socket is filtered on the identifier with the standard 11-bit mask.

`read` raises `CanSocketError` in three cases: the identifier was never
opened, its socket is closed, or the read fails. If the device is gone
(`ENODEV`), the socket for that identifier is closed, marked closed in
`is_opened`, and `LinkDownError` is raised.

## Monitoring buses

On each update, `SocketCANMonitor` does the following:

- It reads `rcvlist_all` and `rcvlist_fil` from a receive-list directory.
  The default is `/proc/net/can`.
- For each watched bus, it asks the kernel over rtnetlink for the controller
  state and the bit timing.

Each bus then gets a `DiagnosticStatus`, checked in this order:

- **offline** (`ERROR`): the bus is not in `rcvlist_all`. The monitor tries
  to reopen its socket.
- **transmission jammed** (`WARN`): the controller state is above
  `ERROR_ACTIVE`.
- **failed to get bitrate** (`WARN`): the bit timing could not be read.
- **can bus overload** (`WARN`): the estimated load is above
  `overload_threshold`. Load is 110 bits per received packet, divided by
  `bitrate / update_freq`.
- **ok** (`OK`): none of the above. The status carries a `bus_load` value
  and an `id_<can_id>_freq` value for each filter entry of that bus.

### From code

```python
from garycan.monitor import MonitorConfig, SocketCANMonitor

def publish(topic, array):
    for status in array.status:
        print(topic, status.name, status.level.name, status.message)

config = MonitorConfig(monitored_can_bus=["can0", "can1"], update_freq=10.0)
monitor = SocketCANMonitor(config, publisher=publish)
monitor.configure()
monitor.activate()
monitor.run(iterations=50)
monitor.shutdown()
```

A publisher is any callable that takes the topic (`diagnose_topic`, by
default `"/diagnostics"`) and a `DiagnosticArray`.

The monitor moves through lifecycle states. Each transition raises
`RuntimeError` if it is called from the wrong state:

- `configure()` moves it from unconfigured to inactive.
- `activate()` moves it from inactive to active.
- `deactivate()` moves it from active back to inactive.
- `cleanup()` moves it from inactive back to unconfigured.
- `shutdown()` ends it.

`update()` returns the report, or `None` when no bus is watched. It publishes
the report only while the monitor is active. `run(iterations)` calls
`update()` at `update_freq` while active. It stops after the given number of
updates, or runs without end when `iterations` is `None`.

The `state_reader`, `bittiming_reader` and `rcvlist_dir` arguments let you
supply other sources of state, timing and receive lists.

### From the command line

```
socket-can-monitor --bus can0 --bus can1 --update-freq 10 --iterations 100
```

Options:

- `--bus` (repeatable)
- `--diagnose-topic`
- `--update-freq`
- `--overload-threshold`
- `--rcvlist-dir`
- `--iterations`
- `--log-level` (`DEBUG`, `INFO`, `WARNING`, `ERROR`)

Each report is printed to standard output as one JSON line. The line holds
the topic, the statuses, the time stamp and the frame id. The command runs
until interrupted unless `--iterations` is given.

## Helper modules

- `garycan.rcvlist.parse_rcvlist(lines)` parses receive-list text into
  `RecvInfo(device, can_id, matches)` records. `read_rcvlist(path)` does the
  same for a file.
- `garycan.netlink.get_can_state(ifname)` returns a `CanState`.
  `get_bittiming(ifname)` returns a `CanBitTiming`. Both raise
  `CanSocketError` when the interface is missing or reports no such data.
- `garycan.netlink.parse_link_message(data)` decodes one `RTM_NEWLINK`
  message into `(ifname, state, bittiming)`.

## What it does not do

The monitor publishes only to the callable it is given, or to standard
output from the command line. It has no message-bus or network publishing
of its own. Bus settings are read but never changed: the package does not
set bitrates, bring interfaces up or down, or restart controllers. Only
classic CAN frames of up to eight bytes are handled, not CAN FD.