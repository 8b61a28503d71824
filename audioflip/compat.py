# audioflip/compat.py
"""
Platform constants and the comtypes shims that must run before pycaw is imported.
Importing this module never touches comtypes; the Windows backend calls
apply_comtypes_shims() itself.
"""
import sys

IS_WINDOWS = sys.platform == "win32"

_SHIMS_APPLIED = False

def apply_comtypes_shims():
    """
    Patch missing PROPVARIANT / VT_* names on older comtypes builds.
    Must be called BEFORE the first `import pycaw`.
    """
    global _SHIMS_APPLIED
    if _SHIMS_APPLIED:
        return
    try:
        import comtypes.automation as _automation
        if not hasattr(_automation, "PROPVARIANT") and hasattr(_automation, "tagPROPVARIANT"):
            _automation.PROPVARIANT = _automation.tagPROPVARIANT
        if not hasattr(_automation, "VT_LPWSTR"):
            _automation.VT_LPWSTR = 31
        if not hasattr(_automation, "VT_BOOL"):
            _automation.VT_BOOL = 11
    except Exception as e:
        print(f"WARNING: comtypes compatibility shim failed: {e}", file=sys.stderr)

    # Load COM cleanup modules upfront so Release() during GC/shutdown
    # never triggers a late import.
    try:
        import comtypes._post_coinit
        import comtypes._post_coinit.unknwn
    except ImportError:
        pass
    _SHIMS_APPLIED = True

# Endpoint flows & roles
E_RENDER = 0  # Playback
E_CONSOLE = 0
E_MULTIMEDIA = 1
E_COMMUNICATIONS = 2

# Applied in this order on every switch.
SWITCH_ROLES = (
    ("console", E_CONSOLE),
    ("multimedia", E_MULTIMEDIA),
    ("communications", E_COMMUNICATIONS),
)

# Device state flags
DEVICE_STATE_ACTIVE = 0x00000001
DEVICE_STATE_ALL    = 0x0000000F  # active | disabled | notpresent | unplugged

DEVICE_STATES = {
    0x00000001: "active",
    0x00000002: "disabled",
    0x00000004: "notpresent",
    0x00000008: "unplugged",
}

def describe_state(state_mask):
    parts = [label for bit, label in DEVICE_STATES.items() if state_mask & bit]
    return ",".join(parts) if parts else "unknown"
