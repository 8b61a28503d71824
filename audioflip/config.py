# audioflip/config.py
#
# User settings stored as INI next to the log:
#
#   [rotation]
#   enabled_ids =
#       {0.0.0.00000000}.{...}
#       {0.0.0.00000000}.{...}
#
# An empty rotation means "every active device is eligible".
import os
import configparser

from .logging_setup import _config_dir, _log, _dbg

CONFIG_NAME = "audioflip.ini"
SECTION = "rotation"

def default_config_path():
    return os.environ.get("AUDIOFLIP_CONFIG") or os.path.join(_config_dir(), CONFIG_NAME)

def default_lock_path():
    return os.environ.get("AUDIOFLIP_LOCK_FILE") or os.path.join(_config_dir(), "switch.lock")


class AppConfig:
    def __init__(self, enabled_device_ids=None, path=None):
        self.enabled_device_ids = set(enabled_device_ids or ())
        self.path = path

    def __repr__(self):
        return f"AppConfig(enabled_device_ids={sorted(self.enabled_device_ids)!r}, path={self.path!r})"

    def allows(self, device_id):
        return not self.enabled_device_ids or device_id in self.enabled_device_ids

    @classmethod
    def load(cls, path=None):
        """
        Missing or unreadable files give the default (empty) rotation; a broken
        config must never stop the user from switching devices.
        """
        path = path or default_config_path()
        cfg = configparser.ConfigParser(interpolation=None)
        if not os.path.exists(path):
            return cls(path=path)
        try:
            cfg.read(path, encoding="utf-8")
        except (configparser.Error, OSError, UnicodeDecodeError) as e:
            _log(f"config: ignoring unreadable {path}: {e}")
            return cls(path=path)
        raw = cfg.get(SECTION, "enabled_ids", fallback="")
        ids = [x.strip() for x in raw.splitlines() if x.strip()]
        _dbg(f"config: loaded {len(ids)} rotation ids from {path}")
        return cls(ids, path=path)

    def reload(self):
        """Re-read the rotation from disk in place. In-memory configs (no path) are left alone."""
        if not self.path:
            return self
        self.enabled_device_ids = AppConfig.load(self.path).enabled_device_ids
        return self

    def save(self, path=None):
        path = path or self.path or default_config_path()
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        cfg = configparser.ConfigParser(interpolation=None)
        cfg[SECTION] = {}
        if self.enabled_device_ids:
            cfg[SECTION]["enabled_ids"] = "\n" + "\n".join(sorted(self.enabled_device_ids))
        else:
            cfg[SECTION]["enabled_ids"] = ""

        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            cfg.write(f)
        os.replace(tmp, path)
        self.path = path
        _dbg(f"config: saved {len(self.enabled_device_ids)} rotation ids to {path}")
