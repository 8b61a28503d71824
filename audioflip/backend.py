# audioflip/backend.py
#
# The OS capability seam. The coordinator only ever talks to an AudioBackend:
#   enumerate_output_devices() -> [OSDevice]
#   get_default_output_device() -> id or None
#   set_default_output_device(id)
#
# WindowsAudioBackend (audioflip.devices) is the real implementation; StubBackend
# keeps the CLI usable off Windows and doubles as an in-memory backend for tests.

import threading
from dataclasses import dataclass

from .compat import IS_WINDOWS
from .errors import EnumerationError
from .logging_setup import _dbg


@dataclass(frozen=True)
class OSDevice:
    """One output endpoint as the OS reports it."""
    id: str
    name: str
    enabled: bool = True


@dataclass(frozen=True)
class Device:
    """One row of a snapshot handed to clients."""
    id: str
    name: str
    is_current: bool
    enabled: bool

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "is_current": self.is_current,
            "enabled": self.enabled,
        }


class AudioBackend:
    def enumerate_output_devices(self):
        raise NotImplementedError

    def get_default_output_device(self):
        raise NotImplementedError

    def set_default_output_device(self, device_id):
        raise NotImplementedError


class StubBackend(AudioBackend):
    """
    In-memory backend. Mutations are guarded by a lock so concurrent callers see
    whole states only.
    """

    def __init__(self, devices=None, default_id=None):
        if devices is None:
            devices = [
                OSDevice("stub-speaker", "Speakers (Stub)"),
                OSDevice("stub-headphone", "Headphones (Stub)"),
            ]
            if default_id is None:
                default_id = "stub-speaker"
        self._devices = list(devices)
        self._default_id = default_id
        self._lock = threading.Lock()

    def enumerate_output_devices(self):
        with self._lock:
            return list(self._devices)

    def get_default_output_device(self):
        with self._lock:
            return self._default_id

    def set_default_output_device(self, device_id):
        _dbg(f"StubBackend.set_default_output_device: {device_id}")
        with self._lock:
            for d in self._devices:
                if d.id == device_id:
                    if not d.enabled:
                        raise RuntimeError("Target device is not active; refusing to set default.")
                    self._default_id = device_id
                    return
        raise RuntimeError(f"Unknown endpoint: {device_id}")

    # Test/simulation helpers (hot-plug)

    def plug(self, device):
        with self._lock:
            self._devices.append(device)

    def unplug(self, device_id):
        with self._lock:
            self._devices = [d for d in self._devices if d.id != device_id]
            if self._default_id == device_id:
                self._default_id = self._devices[0].id if self._devices else None


def default_backend(include_inactive=True):
    """
    Windows gets the pycaw/PolicyConfig backend; everything else the stub.
    pycaw/comtypes are only imported on Windows.
    """
    if IS_WINDOWS:
        try:
            from .devices import WindowsAudioBackend
        except ImportError as e:
            raise EnumerationError(f"Windows audio backend unavailable: {e}") from e
        return WindowsAudioBackend(include_inactive=include_inactive)
    return StubBackend()
