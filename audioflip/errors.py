# audioflip/errors.py
#
# Structured failures returned to clients (CLI, panel UI).
# Every error carries a `kind` string matching the client contract, and may carry
# the snapshot the client must re-render (the true OS state, never the requested one).


class AudioFlipError(Exception):
    kind = "Error"

    def __init__(self, message, snapshot=None):
        super().__init__(message)
        self.message = message
        self.snapshot = tuple(snapshot) if snapshot is not None else None

    def to_dict(self):
        err = {"kind": self.kind, "message": self.message}
        if self.snapshot is not None:
            err["devices"] = [d.to_dict() for d in self.snapshot]
        return {"error": err}


class EnumerationError(AudioFlipError):
    """The OS audio subsystem could not be queried (or reported no default device)."""
    kind = "EnumerationError"


class NotFound(AudioFlipError):
    kind = "NotFound"


class Disabled(AudioFlipError):
    kind = "Disabled"


class Busy(AudioFlipError):
    """Another switch is in flight. Never queued; callers may retry."""
    kind = "Busy"


class SwitchFailed(AudioFlipError):
    """
    The OS rejected the switch, or accepted it but the default did not change.
    `snapshot` holds the actual state after the attempt when it could be read.
    """
    kind = "SwitchFailed"
