# audioflip/__init__.py

# Public surface: the coordinator for embedding (panel/tray front-ends, tests) and
# main() for the CLI dispatcher.
from .backend import AudioBackend, Device, OSDevice, StubBackend, default_backend
from .coordinator import SwitchCoordinator, status_text
from .errors import AudioFlipError, EnumerationError, NotFound, Disabled, Busy, SwitchFailed
from .cli import main

__version__ = "1.0.0"

__all__ = [
    "main",
    "SwitchCoordinator", "status_text",
    "AudioBackend", "Device", "OSDevice", "StubBackend", "default_backend",
    "AudioFlipError", "EnumerationError", "NotFound", "Disabled", "Busy", "SwitchFailed",
]
