import threading

import pytest

from audioflip import logging_setup
from audioflip.backend import OSDevice, StubBackend
from audioflip.config import AppConfig
from audioflip.coordinator import SwitchCoordinator


class FakeBackend(StubBackend):
    """
    StubBackend with knobs for the failure modes Windows actually produces.

    fail_enumeration: enumerate/default queries raise OSError (audio service down)
    reject:           set_default_output_device raises (PolicyConfig HRESULT failure)
    ignore_set:       set call "succeeds" but the default never changes
    hijack_to:        after our set, another process immediately makes this id default
    gate/entered:     block inside set_default_output_device until released
    """

    def __init__(self, devices=None, default_id=None):
        super().__init__(devices, default_id)
        self.fail_enumeration = False
        self.reject = False
        self.ignore_set = False
        self.hijack_to = None
        self.gate = None
        self.entered = threading.Event()
        self.set_calls = []

    def enumerate_output_devices(self):
        if self.fail_enumeration:
            raise OSError("Audio service is not running")
        return super().enumerate_output_devices()

    def get_default_output_device(self):
        if self.fail_enumeration:
            raise OSError("Audio service is not running")
        return super().get_default_output_device()

    def set_default_output_device(self, device_id):
        self.set_calls.append(device_id)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.reject:
            raise RuntimeError("SetDefaultEndpoint failed: 0x80070005")
        if self.ignore_set:
            return
        super().set_default_output_device(device_id)
        if self.hijack_to is not None:
            with self._lock:
                self._default_id = self.hijack_to

    def set_default(self, device_id):
        with self._lock:
            self._default_id = device_id


@pytest.fixture(autouse=True)
def _isolated_paths(tmp_path, monkeypatch):
    logging_setup.set_log_dir(tmp_path)
    monkeypatch.setenv("AUDIOFLIP_CONFIG", str(tmp_path / "audioflip.ini"))
    monkeypatch.setenv("AUDIOFLIP_LOCK_FILE", str(tmp_path / "switch.lock"))


@pytest.fixture
def backend():
    return FakeBackend(
        devices=[
            OSDevice("A", "Speakers"),
            OSDevice("B", "Headphones"),
        ],
        default_id="A",
    )


@pytest.fixture
def config(tmp_path):
    return AppConfig(path=str(tmp_path / "audioflip.ini"))


@pytest.fixture
def coord(backend, config):
    return SwitchCoordinator(backend, config=config, verify_timeout=0, verify_interval=0.01)


def as_pairs(snapshot):
    return [(d.id, d.is_current) for d in snapshot]
