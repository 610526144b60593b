import json

import pytest

from garycan.canbus import CanSocketError
from garycan.monitor import (
    DiagnosticLevel,
    MonitorConfig,
    SocketCANMonitor,
    main,
)
from garycan.netlink import CanBitTiming, CanState

BUS = "can_test0"
HEADER = "  device   can_id   can_mask  function  userdata   matches  ident"


def _write(directory, name, rows):
    lines = [f"receive list 'rx_{name}':", HEADER]
    lines += [
        f"   {device}     {can_id}    00000000  ffffffffa0d0b4b0  ffff88801c44b000  {matches}  raw"
        for device, can_id, matches in rows
    ]
    (directory / f"rcvlist_{name}").write_text("\n".join(lines) + "\n")


def _make(tmp_path, published, state=CanState.ERROR_ACTIVE, bitrate=1_000_000, **options):
    config = MonitorConfig(monitored_can_bus=(BUS,), **options)

    def state_reader(name):
        if state is None:
            raise CanSocketError("no state")
        return state

    def bittiming_reader(name):
        if bitrate is None:
            raise CanSocketError("no bit timing")
        return CanBitTiming(bitrate=bitrate)

    monitor = SocketCANMonitor(
        config,
        publisher=lambda topic, array: published.append((topic, array)),
        state_reader=state_reader,
        bittiming_reader=bittiming_reader,
        rcvlist_dir=tmp_path,
    )
    monitor.configure()
    monitor.activate()
    return monitor


def test_missing_device_reported_offline(tmp_path):
    published = []
    _write(tmp_path, "all", [("can_other", "000", 3)])
    monitor = _make(tmp_path, published)
    array = monitor.update()
    (status,) = array.status
    assert status.level == DiagnosticLevel.ERROR
    assert status.message == "offline"
    assert status.name == BUS and status.hardware_id == BUS
    assert published == [("/diagnostics", array)]


def test_missing_rcvlist_files_mean_offline(tmp_path):
    monitor = _make(tmp_path, [])
    assert monitor.update().status[0].message == "offline"


def test_jammed_state_warns(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [], state=CanState.ERROR_PASSIVE)
    (status,) = monitor.update().status
    assert status.level == DiagnosticLevel.WARN
    assert status.message == "transmission jammed"
    assert status.values == []


def test_missing_bitrate_warns(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [], bitrate=None)
    (status,) = monitor.update().status
    assert status.level == DiagnosticLevel.WARN
    assert status.message == "failed to get bitrate"


def test_unreadable_state_still_checks_load(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [], state=None)
    (status,) = monitor.update().status
    assert status.level == DiagnosticLevel.OK
    assert status.message == "ok"


def test_idle_bus_reports_zero_load(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [])
    (status,) = monitor.update().status
    assert status.level == DiagnosticLevel.OK
    assert [(kv.key, kv.value) for kv in status.values] == [("bus_load", "0.000000")]


def test_busy_bus_is_overloaded(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [])
    monitor.update()
    _write(tmp_path, "all", [(BUS, "000", 1000)])
    (status,) = monitor.update().status
    assert status.level == DiagnosticLevel.WARN
    assert status.message == "can bus overload"


def test_load_below_raised_threshold_is_ok(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    monitor = _make(tmp_path, [], overload_threshold=100.0)
    monitor.update()
    _write(tmp_path, "all", [(BUS, "000", 1000)])
    (status,) = monitor.update().status
    assert status.message == "ok"
    load = float(status.values[0].value)
    assert 0 < load <= monitor.config.overload_threshold


def test_filter_frequencies_use_deltas(tmp_path):
    _write(tmp_path, "all", [(BUS, "000", 0)])
    _write(tmp_path, "fil", [(BUS, "201", 5), ("can_other", "202", 9)])
    monitor = _make(tmp_path, [])
    first = dict((kv.key, kv.value) for kv in monitor.update().status[0].values)
    assert first["id_201_freq"] == "50.000000"
    assert "id_202_freq" not in first
    _write(tmp_path, "fil", [(BUS, "201", 7)])
    second = dict((kv.key, kv.value) for kv in monitor.update().status[0].values)
    assert second["id_201_freq"] == "20.000000"


def test_bus_coming_back_online_is_ok(tmp_path):
    monitor = _make(tmp_path, [])
    assert monitor.update().status[0].level == DiagnosticLevel.ERROR
    _write(tmp_path, "all", [(BUS, "000", 0)])
    assert monitor.update().status[0].level == DiagnosticLevel.OK


def test_no_monitored_bus_publishes_nothing(tmp_path):
    published = []
    monitor = SocketCANMonitor(
        MonitorConfig(),
        publisher=lambda topic, array: published.append(array),
        rcvlist_dir=tmp_path,
    )
    monitor.configure()
    monitor.activate()
    assert monitor.update() is None
    assert published == []


def test_activate_before_configure_fails(tmp_path):
    monitor = SocketCANMonitor(MonitorConfig(monitored_can_bus=(BUS,)), rcvlist_dir=tmp_path)
    with pytest.raises(RuntimeError):
        monitor.activate()


def test_inactive_monitor_does_not_publish(tmp_path):
    published = []
    monitor = _make(tmp_path, published)
    monitor.deactivate()
    array = monitor.update()
    assert array.status[0].message == "offline"
    assert published == []
    with pytest.raises(RuntimeError):
        monitor.run(1)


def test_zero_update_frequency_is_rejected():
    with pytest.raises(ValueError):
        MonitorConfig(update_freq=0)


def test_run_publishes_each_iteration(tmp_path):
    published = []
    monitor = _make(tmp_path, published, update_freq=1000.0)
    assert monitor.run(3) == 3
    assert len(published) == 3


def test_main_prints_json_reports(tmp_path, capsys):
    argv = [
        "--bus", BUS,
        "--rcvlist-dir", str(tmp_path),
        "--update-freq", "1000",
        "--iterations", "2",
        "--diagnose-topic", "/diag",
    ]
    assert main(argv) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    report = json.loads(lines[0])
    assert report["topic"] == "/diag"
    assert report["status"][0]["message"] == "offline"
    assert report["status"][0]["level"] == DiagnosticLevel.ERROR