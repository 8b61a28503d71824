# audioflip/cli.py
import sys
import re
import json
import argparse

from .backend import default_backend
from .config import AppConfig, default_config_path, default_lock_path
from .coordinator import SwitchCoordinator, status_text
from .errors import AudioFlipError
from .logging_setup import _log, _log_exc, set_debug
from .switch_lock import SwitchLock

EXIT_OK = 0
EXIT_SWITCH_FAILED = 1
EXIT_NOT_FOUND = 3
EXIT_AMBIGUOUS = 4
EXIT_DISABLED = 5
EXIT_BUSY = 6
EXIT_ENUMERATION = 7
EXIT_INTERRUPTED = 130

EXIT_CODES = {
    "SwitchFailed": EXIT_SWITCH_FAILED,
    "NotFound": EXIT_NOT_FOUND,
    "Disabled": EXIT_DISABLED,
    "Busy": EXIT_BUSY,
    "EnumerationError": EXIT_ENUMERATION,
}

CURRENT_MARKER = "(current)"

def _print_devices(devices, as_json):
    if as_json:
        print(json.dumps({"devices": [d.to_dict() for d in devices]}, indent=2))
        return
    print("--- Playback (Render) ---")
    for i, d in enumerate(devices):
        marker = f" {CURRENT_MARKER}" if d.is_current else ""
        check = "x" if d.enabled else " "
        print(f"[{i}] [{check}] {d.name}{marker}  id={d.id}")

def find_devices_by_selector(devices, dev_id=None, name_substr=None, regex=False):
    """
    Pure filter: exact id, or case-insensitive substring/regex on the name.
    """
    if not dev_id and not name_substr:
        return []

    def match(d):
        if dev_id:
            return d.id == dev_id
        if regex:
            return re.search(name_substr, d.name, re.IGNORECASE) is not None
        return name_substr.lower() in d.name.lower()

    return [d for d in devices if match(d)]

def _pretty_matches_msg(matches):
    lines = [f"  [idx {i}] {d.name}  id={d.id}" for i, d in enumerate(matches)]
    return "Multiple device matches:\n" + "\n".join(lines) + "\nUse --index to disambiguate."

def _resolve_target_id(coord, args):
    """
    Returns (device_id, None) or (None, exit_code). An --id is passed through untouched
    so an unknown id surfaces as the coordinator's NotFound.
    """
    if args.id:
        return args.id, None
    matches = find_devices_by_selector(coord.list_devices(), name_substr=args.name, regex=args.regex)
    if not matches:
        print("ERROR: device not found", file=sys.stderr)
        return None, EXIT_NOT_FOUND
    if args.index is not None:
        if args.index < 0 or args.index >= len(matches):
            print(f"ERROR: --index out of range (0..{len(matches)-1})", file=sys.stderr)
            return None, EXIT_AMBIGUOUS
        return matches[args.index].id, None
    if len(matches) > 1:
        print(_pretty_matches_msg(matches), file=sys.stderr)
        return None, EXIT_AMBIGUOUS
    return matches[0].id, None

def cmd_list(coord, args):
    _print_devices(coord.list_devices(), args.json)
    return EXIT_OK

def cmd_toggle(coord, args):
    device_id, rc = _resolve_target_id(coord, args)
    if rc is not None:
        return rc
    devices = coord.toggle_device(device_id)
    _print_devices(devices, True)
    return EXIT_OK

def cmd_next(coord, args):
    devices = coord.cycle_next()
    if devices is None:
        print(json.dumps({"switched": False, "reason": "fewer than two devices in rotation"}))
        return EXIT_OK
    _print_devices(devices, True)
    return EXIT_OK

def cmd_enable(coord, args):
    _print_devices(coord.set_device_enabled(args.id, True), True)
    return EXIT_OK

def cmd_disable(coord, args):
    _print_devices(coord.set_device_enabled(args.id, False), True)
    return EXIT_OK

def cmd_status(coord, args):
    print(status_text(coord.list_devices()))
    return EXIT_OK

def build_parser():
    p = argparse.ArgumentParser(prog="audioflip", description="Switch the default audio output device")
    p.add_argument("--config", help=f"Path to audioflip.ini (default: {default_config_path()})")
    p.add_argument("--debug", action="store_true", help="Write debug breadcrumbs to the log")
    p.add_argument("--verify-timeout", type=float, default=1.0,
                   help="Seconds to wait for Windows to report the new default (default: 1.0)")
    p.add_argument("--active-only", action="store_true", help="Hide disabled/disconnected endpoints")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_list = sub.add_parser("list", help="List playback devices")
    p_list.add_argument("--json", action="store_true")
    p_list.set_defaults(func=cmd_list)

    p_t = sub.add_parser("toggle", help="Make a device the default output")
    sel = p_t.add_mutually_exclusive_group(required=True)
    sel.add_argument("--id")
    sel.add_argument("--name", help="Substring (or regex with --regex) of the device name")
    p_t.add_argument("--index", type=int, help="Pick among multiple name matches")
    p_t.add_argument("--regex", action="store_true")
    p_t.set_defaults(func=cmd_toggle)

    p_n = sub.add_parser("next", help="Switch to the next device in the rotation")
    p_n.set_defaults(func=cmd_next)

    p_en = sub.add_parser("enable", help="Add a device to the rotation")
    p_en.add_argument("--id", required=True)
    p_en.set_defaults(func=cmd_enable)

    p_dis = sub.add_parser("disable", help="Remove a device from the rotation")
    p_dis.add_argument("--id", required=True)
    p_dis.set_defaults(func=cmd_disable)

    p_st = sub.add_parser("status", help="Print the tray status text")
    p_st.set_defaults(func=cmd_status)

    return p

def build_coordinator(args, backend=None):
    config = AppConfig.load(args.config)
    if backend is None:
        backend = default_backend(include_inactive=not args.active_only)
    lock = SwitchLock(lock_file=default_lock_path())
    return SwitchCoordinator(backend, config=config, lock=lock, verify_timeout=args.verify_timeout)

def main(argv=None, backend=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug:
        set_debug(True)

    try:
        coord = build_coordinator(args, backend=backend)
        return args.func(coord, args)
    except AudioFlipError as e:
        # Clients re-render from the attached snapshot, which is the real OS state.
        print(json.dumps(e.to_dict(), indent=2))
        print(f"ERROR: {e.kind}: {e.message}", file=sys.stderr)
        return EXIT_CODES.get(e.kind, EXIT_SWITCH_FAILED)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except OSError as e:
        _log_exc("cli: unexpected OS error")
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_SWITCH_FAILED
    finally:
        _log(f"cli: finished {args.cmd}")
