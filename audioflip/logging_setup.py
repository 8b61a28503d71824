# audioflip/logging_setup.py
import os
import sys
import traceback
import datetime
import tempfile
import threading

try:
    import faulthandler
except Exception:
    faulthandler = None

LOG_NAME = "audioflip.log"
# Past this size the log is moved aside to audioflip.log.old on next init.
LOG_MAX_BYTES = 1_000_000

# Debug toggle (runtime)
_DEBUG = bool(int(os.environ.get("AUDIOFLIP_DEBUG", "0") or "0"))

# Internal state (lazy init: no file I/O at import time)
_LOG_DIR = None
_LOG_PATH = None
_INITIALIZED = False
_FH = None            # faulthandler file handle
_HOOKS_INSTALLED = False
_WRITE_LOCK = threading.Lock()

def set_debug(on: bool = True):
    global _DEBUG
    _DEBUG = bool(on)
    _log(f"DEBUG {'enabled' if _DEBUG else 'disabled'}")

def _config_dir():
    """
    Per-user directory for audioflip.ini and the log file.
    %APPDATA%\\audioflip on Windows, $XDG_CONFIG_HOME/audioflip elsewhere.
    """
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "audioflip")

def _resolve_log_path():
    """
    Decide where the log would live, but do not create it yet.
    """
    base = os.environ.get("AUDIOFLIP_LOG_DIR") or _config_dir()
    path = os.path.join(base, LOG_NAME)
    try:
        os.makedirs(base, exist_ok=True)
        # Probe writability without creating the real log
        test = os.path.join(base, ".writetest")
        with open(test, "w", encoding="utf-8") as _:
            pass
        os.remove(test)
        return base, path
    except OSError:
        tdir = os.path.join(tempfile.gettempdir(), "audioflip")
        try:
            os.makedirs(tdir, exist_ok=True)
        except OSError:
            tdir = tempfile.gettempdir()
        return tdir, os.path.join(tdir, LOG_NAME)

def _ensure_resolved():
    global _LOG_DIR, _LOG_PATH
    if _LOG_DIR is None or _LOG_PATH is None:
        _LOG_DIR, _LOG_PATH = _resolve_log_path()

def set_log_dir(path):
    """Point logging at another directory (next write re-initializes)."""
    global _LOG_DIR, _LOG_PATH, _INITIALIZED
    _close_fault_handle()
    _LOG_DIR = str(path)
    _LOG_PATH = os.path.join(_LOG_DIR, LOG_NAME)
    _INITIALIZED = False

def _rotate_if_large():
    """Move the log to .old once it reaches LOG_MAX_BYTES. True when it was moved."""
    try:
        if os.path.getsize(_LOG_PATH) < LOG_MAX_BYTES:
            return False
    except OSError:
        return False
    # faulthandler keeps the file open; Windows refuses to rename it while it is.
    reopen = _FH is not None
    _close_fault_handle()
    try:
        os.replace(_LOG_PATH, _LOG_PATH + ".old")
        rotated = True
    except OSError:
        rotated = False
    if reopen:
        _enable_fault_handle()
    return rotated

def _global_excepthook(exc_type, exc_value, exc_tb):
    _log_exc("UNCAUGHT EXCEPTION", (exc_type, exc_value, exc_tb))
    sys.__excepthook__(exc_type, exc_value, exc_tb)

def _thread_excepthook(args):
    _log_exc(f"UNCAUGHT EXCEPTION in thread {getattr(args.thread, 'name', '?')}",
             (args.exc_type, args.exc_value, args.exc_traceback))

def _install_hooks_once():
    global _HOOKS_INSTALLED
    if _HOOKS_INSTALLED:
        return
    sys.excepthook = _global_excepthook
    threading.excepthook = _thread_excepthook

    import atexit
    atexit.register(_atexit_normal)
    atexit.register(_close_fault_handle)
    _HOOKS_INSTALLED = True

def _close_fault_handle():
    global _FH
    try:
        if faulthandler and _FH and not _FH.closed:
            faulthandler.disable()
            _FH.close()
    except Exception:
        pass
    _FH = None

def _atexit_normal():
    _log("atexit: process exiting normally")

def _ensure_init():
    """
    Initialize logging on first use (lazy):
    - Resolve the log file and rotate it if it grew past LOG_MAX_BYTES
      (every later write checks the size again)
    - Write the first breadcrumb
    - Install exception hooks and atexit handlers (once per process)
    - Enable faulthandler (if available)
    """
    global _INITIALIZED
    if _INITIALIZED:
        return
    _INITIALIZED = True

    _ensure_resolved()
    _rotate_if_large()

    try:
        ts = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(_LOG_PATH, "a", encoding="utf-8", errors="replace") as f:
            f.write(f"[{ts}] logging to: {_LOG_PATH}\n")
    except OSError:
        pass

    _install_hooks_once()

    _enable_fault_handle()

def _enable_fault_handle():
    global _FH
    if faulthandler and _FH is None:
        try:
            _FH = open(_LOG_PATH, "a", buffering=1, encoding="utf-8", errors="replace")
            faulthandler.enable(file=_FH, all_threads=True)
        except (OSError, RuntimeError, ValueError):
            _FH = None

def _log_path():
    _ensure_resolved()   # no file I/O here
    return _LOG_PATH

def _write(line: str):
    ts = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    with _WRITE_LOCK:
        _rotate_if_large()
        try:
            with open(_LOG_PATH, "a", encoding="utf-8", errors="replace") as f:
                f.write(f"[{ts}] {line}\n")
        except OSError:
            pass

def _log(msg: str):
    _ensure_init()       # creates file on first use
    _write(msg)

def _log_exc(prefix: str, exc_info=None):
    if exc_info is None:
        exc_info = sys.exc_info()
    tb = "".join(traceback.format_exception(*exc_info))
    _log(f"{prefix}\n{tb}")

def _dbg(msg: str):
    if not _DEBUG:
        return
    _ensure_init()
    _write(f"[DBG pid={os.getpid()} tid={threading.get_ident()}] {msg}")
