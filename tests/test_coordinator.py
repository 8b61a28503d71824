import threading

import pytest

from audioflip.backend import Device, OSDevice
from audioflip.config import AppConfig
from audioflip.coordinator import SwitchCoordinator, status_text
from audioflip.errors import Busy, Disabled, EnumerationError, NotFound, SwitchFailed

from conftest import FakeBackend, as_pairs


def test_list_devices_reflects_os_order_and_default(coord):
    snapshot = coord.list_devices()
    assert snapshot == (
        Device("A", "Speakers", is_current=True, enabled=True),
        Device("B", "Headphones", is_current=False, enabled=True),
    )


def test_list_devices_does_not_take_switch_lock(coord):
    assert coord.lock.try_acquire()
    try:
        assert len(coord.list_devices()) == 2
    finally:
        coord.lock.release()


def test_list_devices_is_never_cached(coord, backend):
    coord.list_devices()
    backend.plug(OSDevice("C", "HDMI"))
    assert [d.id for d in coord.list_devices()] == ["A", "B", "C"]


def test_enumeration_failure_is_propagated(coord, backend):
    backend.fail_enumeration = True
    with pytest.raises(EnumerationError):
        coord.list_devices()


def test_no_default_device_is_an_enumeration_error(backend, config):
    backend.set_default(None)
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    with pytest.raises(EnumerationError):
        coord.list_devices()


def test_default_outside_enumeration_is_an_enumeration_error(coord, backend):
    backend.set_default("ghost")
    with pytest.raises(EnumerationError):
        coord.list_devices()


def test_inactive_endpoints_are_listed_but_disabled(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("U", "USB DAC", enabled=False)],
        default_id="A",
    )
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    snapshot = coord.list_devices()
    assert [(d.id, d.enabled) for d in snapshot] == [("A", True), ("U", False)]


def test_toggle_switches_and_returns_fresh_snapshot(coord, backend):
    snapshot = coord.toggle_device("B")
    assert snapshot == (
        Device("A", "Speakers", is_current=False, enabled=True),
        Device("B", "Headphones", is_current=True, enabled=True),
    )
    assert backend.set_calls == ["B"]
    assert not coord.lock.locked()


def test_toggle_current_device_is_idempotent(coord, backend):
    before = coord.list_devices()
    after = coord.toggle_device("A")
    assert after == before
    assert backend.set_calls == []


def test_toggle_current_device_still_verifies(coord, backend):
    # Current per the fresh enumeration, but the default moves before verification.
    original = backend.get_default_output_device

    calls = []

    def flaky_default():
        calls.append(1)
        # The first read builds the snapshot; later reads see another app's change.
        return original() if len(calls) <= 1 else "B"

    backend.get_default_output_device = flaky_default
    with pytest.raises(SwitchFailed) as exc:
        coord.toggle_device("A")
    assert as_pairs(exc.value.snapshot) == [("A", False), ("B", True)]


def test_toggle_unknown_id_is_not_found_with_unchanged_snapshot(coord, backend):
    with pytest.raises(NotFound) as exc:
        coord.toggle_device("Z")
    assert as_pairs(exc.value.snapshot) == [("A", True), ("B", False)]
    assert backend.set_calls == []
    assert backend.get_default_output_device() == "A"


def test_toggle_unplugged_device_is_not_found(coord, backend):
    stale = coord.list_devices()
    assert "B" in [d.id for d in stale]
    backend.unplug("B")
    with pytest.raises(NotFound):
        coord.toggle_device("B")
    assert backend.set_calls == []


def test_toggle_inactive_device_is_disabled(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("U", "USB DAC", enabled=False)],
        default_id="A",
    )
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    with pytest.raises(Disabled) as exc:
        coord.toggle_device("U")
    assert as_pairs(exc.value.snapshot) == [("A", True), ("U", False)]
    assert backend.set_calls == []


def test_toggle_device_outside_rotation_is_disabled(coord, config, backend):
    config.enabled_device_ids = {"A"}
    config.save()
    with pytest.raises(Disabled):
        coord.toggle_device("B")
    assert backend.set_calls == []


def test_os_rejection_is_switch_failed_with_actual_state(coord, backend):
    backend.reject = True
    with pytest.raises(SwitchFailed) as exc:
        coord.toggle_device("B")
    assert as_pairs(exc.value.snapshot) == [("A", True), ("B", False)]
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert not coord.lock.locked()


def test_silent_rejection_is_switch_failed(coord, backend):
    backend.ignore_set = True
    with pytest.raises(SwitchFailed) as exc:
        coord.toggle_device("B")
    assert as_pairs(exc.value.snapshot) == [("A", True), ("B", False)]
    assert backend.set_calls == ["B"]


def test_raced_switch_reports_true_os_state(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    backend.hijack_to = "C"
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    with pytest.raises(SwitchFailed) as exc:
        coord.toggle_device("B")
    assert as_pairs(exc.value.snapshot) == [("A", False), ("B", False), ("C", True)]


def test_switch_failed_without_readable_state_has_no_snapshot(coord, backend):
    def reject_and_break(device_id):
        backend.fail_enumeration = True
        raise RuntimeError("driver crashed")

    backend.set_default_output_device = reject_and_break
    with pytest.raises(SwitchFailed) as exc:
        coord.toggle_device("B")
    assert exc.value.snapshot is None
    assert "devices" not in exc.value.to_dict()["error"]


def test_no_automatic_retry_after_failure(coord, backend):
    backend.ignore_set = True
    with pytest.raises(SwitchFailed):
        coord.toggle_device("B")
    assert backend.set_calls == ["B"]


def test_verification_waits_for_async_apply(backend, config):
    coord = SwitchCoordinator(backend, config=config, verify_timeout=1.0, verify_interval=0.01)
    original = backend.get_default_output_device
    reads = []

    def lagging_default():
        reads.append(1)
        value = original()
        # Windows reports the old default for a couple of reads after the switch.
        if value == "B" and len(reads) < 5:
            return "A"
        return value

    backend.get_default_output_device = lagging_default
    snapshot = coord.toggle_device("B")
    assert as_pairs(snapshot) == [("A", False), ("B", True)]


def test_enumeration_failure_during_toggle_releases_lock(coord, backend):
    backend.fail_enumeration = True
    with pytest.raises(EnumerationError):
        coord.toggle_device("B")
    assert not coord.lock.locked()


def test_concurrent_toggle_is_busy_and_does_not_block(coord, backend):
    backend.gate = threading.Event()
    results = {}

    def first():
        results["first"] = coord.toggle_device("B")

    t = threading.Thread(target=first)
    t.start()
    assert backend.entered.wait(5)

    with pytest.raises(Busy):
        coord.toggle_device("A")

    backend.gate.set()
    t.join(5)
    assert as_pairs(results["first"]) == [("A", False), ("B", True)]
    assert backend.set_calls == ["B"]


def test_simultaneous_toggles_yield_one_success_and_one_busy(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    backend.gate = threading.Event()
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    outcomes = []
    lock = threading.Lock()
    start = threading.Barrier(2)

    def worker(target):
        start.wait()
        try:
            coord.toggle_device(target)
            result = "ok"
        except Busy:
            result = "busy"
            # The loser is out; let the winner finish.
            backend.gate.set()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(t,)) for t in ("B", "C")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert sorted(outcomes) == ["busy", "ok"]
    snapshot = coord.list_devices()
    assert sum(1 for d in snapshot if d.is_current) == 1


def test_at_most_one_current_in_every_snapshot(coord):
    for target in ("B", "A", "B", "B"):
        snapshot = coord.toggle_device(target)
        assert sum(1 for d in snapshot if d.is_current) == 1


def test_cycle_next_wraps_through_rotation(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    order = []
    for _ in range(4):
        snapshot = coord.cycle_next()
        order.append(next(d.id for d in snapshot if d.is_current))
    assert order == ["B", "C", "A", "B"]


def test_cycle_next_skips_devices_outside_rotation(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    config.enabled_device_ids = {"A", "C"}
    config.save()
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    snapshot = coord.cycle_next()
    assert as_pairs(snapshot) == [("A", False), ("B", False), ("C", True)]


def test_cycle_next_from_device_outside_rotation_starts_at_second_entry(config):
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    config.enabled_device_ids = {"B", "C"}
    config.save()
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    snapshot = coord.cycle_next()
    assert next(d.id for d in snapshot if d.is_current) == "C"


def test_cycle_next_with_single_device_is_noop(config):
    backend = FakeBackend(devices=[OSDevice("A", "Speakers")], default_id="A")
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    assert coord.cycle_next() is None
    assert backend.set_calls == []
    assert not coord.lock.locked()


def test_cycle_next_is_busy_while_switching(coord, backend):
    backend.gate = threading.Event()
    t = threading.Thread(target=coord.toggle_device, args=("B",))
    t.start()
    assert backend.entered.wait(5)
    with pytest.raises(Busy):
        coord.cycle_next()
    backend.gate.set()
    t.join(5)


def test_set_device_enabled_materializes_rotation(coord, config):
    snapshot = coord.set_device_enabled("B", False)
    assert [(d.id, d.enabled) for d in snapshot] == [("A", True), ("B", False)]
    assert config.enabled_device_ids == {"A"}


def test_set_device_enabled_persists(coord, config, tmp_path):
    coord.set_device_enabled("B", False)
    coord.set_device_enabled("B", True)
    assert AppConfig.load(config.path).enabled_device_ids == {"A", "B"}


def test_set_device_enabled_unknown_id(coord):
    with pytest.raises(NotFound):
        coord.set_device_enabled("Z", True)


def test_set_device_enabled_does_not_need_switch_lock(coord):
    assert coord.lock.try_acquire()
    try:
        coord.set_device_enabled("B", False)
    finally:
        coord.lock.release()


def test_status_text(coord):
    assert status_text(coord.list_devices()) == "EasyAudioFlip - Speakers"
    assert status_text(()) == "EasyAudioFlip"


def test_error_to_dict_carries_devices(coord):
    with pytest.raises(NotFound) as exc:
        coord.toggle_device("Z")
    payload = exc.value.to_dict()
    assert payload["error"]["kind"] == "NotFound"
    assert payload["error"]["devices"][0] == {
        "id": "A", "name": "Speakers", "is_current": True, "enabled": True,
    }

def test_rotation_edits_from_another_coordinator_are_seen(config):
    # A long-lived panel and a one-shot CLI run sharing one INI file.
    backend = FakeBackend(
        devices=[OSDevice("A", "Speakers"), OSDevice("B", "Headphones"), OSDevice("C", "HDMI")],
        default_id="A",
    )
    panel = SwitchCoordinator(backend, config=AppConfig.load(config.path), verify_timeout=0)
    assert all(d.enabled for d in panel.list_devices())

    cli = SwitchCoordinator(backend, config=AppConfig.load(config.path), verify_timeout=0)
    cli.set_device_enabled("B", False)

    assert [d.id for d in panel.list_devices() if not d.enabled] == ["B"]
    with pytest.raises(Disabled):
        panel.toggle_device("B")

    panel.set_device_enabled("C", False)
    assert AppConfig.load(config.path).enabled_device_ids == {"A"}
    assert [d.id for d in cli.list_devices() if d.enabled] == ["A"]


def test_concurrent_rotation_edits_are_not_lost(config):
    backend = FakeBackend(
        devices=[OSDevice(str(i), f"Output {i}") for i in range(8)],
        default_id="0",
    )
    coord = SwitchCoordinator(backend, config=config, verify_timeout=0)
    threads = [threading.Thread(target=coord.set_device_enabled, args=(str(i), False)) for i in range(1, 8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)
    assert AppConfig.load(config.path).enabled_device_ids == {"0"}
