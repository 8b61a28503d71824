# audioflip/coordinator.py
#
# Device registry & switch coordinator.
#
# There is no cached "current device" anywhere in here: every call re-reads the OS, and
# the rotation is re-read from its INI file on every snapshot, so edits made by
# another process (the CLI) are seen. Clients must render whatever
# snapshot comes back (also the one attached to an error), never what they asked for.
#
#   list_devices()      read-only, never locks
#   toggle_device(id)   try-lock -> re-enumerate -> re-validate -> switch -> verify
#   cycle_next()        same switch path, target = next device in the rotation
#   set_device_enabled  read-modify-write the persisted rotation (config lock only, never
#                       touches the OS default)

import time
import threading

from .backend import Device
from .config import AppConfig
from .errors import AudioFlipError, EnumerationError, NotFound, Disabled, SwitchFailed
from .logging_setup import _log, _dbg
from .switch_lock import SwitchLock

APP_TITLE = "EasyAudioFlip"


def status_text(snapshot):
    """Tray tooltip: app title plus the current device name, if any."""
    for d in snapshot or ():
        if d.is_current:
            return f"{APP_TITLE} - {d.name}"
    return APP_TITLE


def find_device(snapshot, device_id):
    for d in snapshot:
        if d.id == device_id:
            return d
    return None


class SwitchCoordinator:
    def __init__(self, backend, config=None, lock=None, verify_timeout=1.0, verify_interval=0.1):
        self.backend = backend
        self.config = config if config is not None else AppConfig()
        self._config_lock = threading.RLock()
        self.lock = lock if lock is not None else SwitchLock()
        self.verify_timeout = float(verify_timeout)
        self.verify_interval = float(verify_interval)

    # ---- snapshots ---------------------------------------------------------

    def _query_os(self):
        try:
            os_devices = list(self.backend.enumerate_output_devices())
            default_id = self.backend.get_default_output_device()
        except EnumerationError:
            raise
        except Exception as e:
            raise EnumerationError(f"Audio subsystem query failed: {e}") from e
        return os_devices, default_id

    def _snapshot(self):
        os_devices, default_id = self._query_os()
        with self._config_lock:
            self.config.reload()
            rotation = AppConfig(self.config.enabled_device_ids)

        out = []
        seen = set()
        for od in os_devices:
            if od.id in seen:
                _dbg(f"snapshot: duplicate endpoint id {od.id} ignored")
                continue
            seen.add(od.id)
            out.append(Device(
                id=od.id,
                name=od.name,
                is_current=(od.id == default_id),
                enabled=bool(od.enabled) and rotation.allows(od.id),
            ))
        snapshot = tuple(out)

        # No current device is a transient OS state, not something to paper over.
        if default_id is None:
            raise EnumerationError("The OS reports no default output device")
        if default_id not in seen:
            raise EnumerationError(f"Default output device {default_id} is not among the enumerated endpoints")
        return snapshot

    def _actual_snapshot(self):
        """Best-effort truth for error reporting; None when the OS can't be read."""
        try:
            return self._snapshot()
        except EnumerationError as e:
            _log(f"could not re-read device state after failed switch: {e}")
            return None

    def list_devices(self):
        return self._snapshot()

    # ---- switching ---------------------------------------------------------

    def toggle_device(self, device_id):
        """
        Make `device_id` the default output. Raises Busy without waiting if a switch is
        already running; NotFound/Disabled against a fresh enumeration; SwitchFailed
        (with the actual snapshot attached) when the OS did not take the change.
        """
        with self.lock.held():
            snapshot = self._snapshot()
            return self._switch_to(device_id, snapshot)

    def cycle_next(self):
        """
        Advance to the next enabled device after the current one (wrapping).
        Returns None when fewer than two devices are in the rotation.
        """
        with self.lock.held():
            snapshot = self._snapshot()
            rotation = [d for d in snapshot if d.enabled]
            if len(rotation) < 2:
                _dbg(f"cycle_next: rotation has {len(rotation)} device(s); nothing to do")
                return None
            current_index = 0
            for i, d in enumerate(rotation):
                if d.is_current:
                    current_index = i
                    break
            target = rotation[(current_index + 1) % len(rotation)]
            return self._switch_to(target.id, snapshot)

    def _switch_to(self, device_id, snapshot):
        # Caller holds the switch lock.
        target = find_device(snapshot, device_id)
        if target is None:
            raise NotFound(f"Device not found: {device_id}", snapshot=snapshot)

        if target.is_current:
            # Already default: nothing to issue, but still confirm against the OS.
            _dbg(f"switch: {device_id} already current; verifying only")
            return self._verify_and_report(device_id, None)

        if not target.enabled:
            raise Disabled(f"Device is disabled: {target.name}", snapshot=snapshot)

        _log(f"switch: requesting default output -> {target.name} [{device_id}]")
        try:
            self.backend.set_default_output_device(device_id)
        except AudioFlipError:
            raise
        except Exception as e:
            _log(f"switch: OS rejected {device_id}: {e}")
            raise SwitchFailed(f"OS rejected switch to {target.name}: {e}",
                               snapshot=self._actual_snapshot()) from e

        return self._verify_and_report(device_id, target.name)

    def _verify_and_report(self, device_id, name):
        ok, last_seen = self._verify_default(device_id)
        if not ok:
            actual = self._actual_snapshot()
            _log(f"switch: verification failed for {device_id}; OS default is {last_seen}")
            raise SwitchFailed(
                f"Switch to {name or device_id} was not applied (OS default is {last_seen})",
                snapshot=actual,
            )
        snapshot = self._snapshot()
        if name is not None:
            _log(f"switch: verified default output {name} [{device_id}]")
        return snapshot

    def _verify_default(self, expected_id):
        """
        Poll the OS default until it equals expected_id or verify_timeout elapses.
        Returns (verified, last_seen_default_id). At least one read always happens.
        """
        deadline = time.monotonic() + self.verify_timeout
        last_seen = None
        while True:
            try:
                last_seen = self.backend.get_default_output_device()
            except Exception as e:
                _dbg(f"verify: default query failed: {e}")
                last_seen = None
            if last_seen == expected_id:
                return True, last_seen
            if time.monotonic() >= deadline:
                return False, last_seen
            time.sleep(self.verify_interval)

    # ---- rotation ----------------------------------------------------------

    def set_device_enabled(self, device_id, enabled):
        """
        Add/remove a device from the persisted rotation and return a fresh snapshot.
        The first edit turns the implicit "all devices" rotation into an explicit set.
        """
        with self._config_lock:
            snapshot = self._snapshot()
            if find_device(snapshot, device_id) is None:
                raise NotFound(f"Device not found: {device_id}", snapshot=snapshot)

            ids = set(self.config.enabled_device_ids)
            if not ids:
                ids = {d.id for d in snapshot if d.enabled}
            if enabled:
                ids.add(device_id)
            else:
                ids.discard(device_id)
            self.config.enabled_device_ids = ids
            self.config.save()
        _log(f"rotation: {'enabled' if enabled else 'disabled'} {device_id} ({len(ids)} in rotation)")
        return self._snapshot()
