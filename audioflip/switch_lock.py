# audioflip/switch_lock.py
#
# Try-lock guarding the OS "default output device" setting.
#
# Two layers, both non-blocking:
#   1. threading.Lock for callers inside this process.
#   2. Optional lock file, so a CLI run and a running panel/tray process never switch
#      at the same time. Ownership is the OS file lock on an open descriptor
#      (fcntl.flock on POSIX, msvcrt.locking on Windows), never the file's existence:
#      the OS drops the lock when the owner exits or crashes, so there is nothing stale
#      to reclaim. The file is never removed; unlinking it would let a late opener lock
#      an orphaned inode while someone else locks the new file.
#
# The pid written into the file is informational (who is switching right now).
# Non-reentrant: the owning thread trying again gets False like anyone else.

import os
import json
import time
import threading
from contextlib import contextmanager

import psutil

from .compat import IS_WINDOWS
from .errors import Busy
from .logging_setup import _dbg, _log

if IS_WINDOWS:
    import msvcrt
else:
    import fcntl

# msvcrt locks are mandatory, so lock a byte far past the pid record to keep it readable.
_WIN_LOCK_OFFSET = 1 << 30


def _try_lock_fd(fd):
    """Non-blocking exclusive lock on fd. True when acquired."""
    try:
        if IS_WINDOWS:
            os.lseek(fd, _WIN_LOCK_OFFSET, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (BlockingIOError, PermissionError):
        return False
    except OSError as e:
        # msvcrt reports contention as EACCES/EDEADLOCK
        if IS_WINDOWS and e.errno in (13, 36):
            return False
        raise


def _unlock_fd(fd):
    if IS_WINDOWS:
        os.lseek(fd, _WIN_LOCK_OFFSET, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class SwitchLock:
    def __init__(self, lock_file=None):
        self._lock = threading.Lock()
        self.lock_file = os.path.expanduser(lock_file) if lock_file else None
        self._fd = None

    def try_acquire(self):
        if not self._lock.acquire(blocking=False):
            _dbg("switch lock busy (in-process)")
            return False
        if self.lock_file is None:
            return True
        try:
            if self._acquire_file():
                return True
        except OSError as e:
            _log(f"switch lock file error ({self.lock_file}): {e}")
        self._lock.release()
        return False

    def release(self):
        try:
            if self._fd is not None:
                self._release_file()
        finally:
            self._lock.release()

    def locked(self):
        return self._lock.locked()

    @contextmanager
    def held(self):
        """Raise Busy instead of waiting when another switch is in flight."""
        if not self.try_acquire():
            raise Busy("Another device switch is already in progress")
        try:
            yield self
        finally:
            self.release()

    # ---- lock file ---------------------------------------------------------

    def _acquire_file(self):
        parent = os.path.dirname(self.lock_file)
        if parent:
            os.makedirs(parent, exist_ok=True)
        fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            locked = _try_lock_fd(fd)
        except OSError:
            os.close(fd)
            raise
        if not locked:
            os.close(fd)
            _dbg(f"switch lock busy (lock file {self.lock_file}, held by {self.owner_description()})")
            return False

        info = {"pid": os.getpid(), "timestamp": time.time()}
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(info).encode())
        self._fd = fd
        return True

    def _release_file(self):
        fd, self._fd = self._fd, None
        try:
            _unlock_fd(fd)
        finally:
            os.close(fd)

    def owner_pid(self):
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return int(json.load(f).get("pid"))
        except (OSError, ValueError, TypeError, AttributeError):
            return None

    def owner_description(self):
        """Best-effort 'name (pid N)' of the last process that took the lock."""
        pid = self.owner_pid()
        if pid is None:
            return "unknown"
        try:
            return f"{psutil.Process(pid).name()} (pid {pid})"
        except psutil.Error:
            return f"pid {pid} (not running)"
