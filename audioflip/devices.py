# audioflip/devices.py
#
# Windows implementation of the AudioBackend seam (pycaw + comtypes).
#
# Responsibilities:
# - Enumerate playback (Render) endpoints, including inactive ones, so disabled/unplugged
#   devices are still listed (but flagged as not switchable).
# - Read the current default playback endpoint (eRender / eConsole).
# - Set the default playback endpoint via PolicyConfig for console, multimedia and
#   communications roles.
#
# Stability rules carried over from years of COM crash reports:
# - Every call manages its own COM init/teardown via _com_context() (thread-local refcount),
#   so the coordinator may be called from any thread.
# - No persistent COM singletons: a fresh enumerator / PolicyConfig per operation.
# - Cache interface *definitions* (comtypes classes), never COM objects.
#
# Only imported on Windows (see backend.default_backend).

import ctypes
import threading
import warnings
from contextlib import contextmanager
from ctypes import wintypes

# Shims BEFORE comtypes/pycaw.
from .compat import (
    apply_comtypes_shims,
    E_RENDER, E_CONSOLE, SWITCH_ROLES,
    DEVICE_STATE_ACTIVE, DEVICE_STATE_ALL, describe_state,
)
apply_comtypes_shims()

import comtypes
from comtypes import CLSCTX_ALL, CoCreateInstance, GUID, IUnknown, COMMETHOD, HRESULT
from pycaw.pycaw import AudioUtilities, IMMDeviceEnumerator
from pycaw.constants import CLSID_MMDeviceEnumerator

from .backend import AudioBackend, OSDevice
from .errors import EnumerationError
from .logging_setup import _dbg, _log

# ---- COM lifecycle management ------------------------------------------------
# First enter on a thread initializes COM, last exit uninitializes it, so nested
# helpers never tear COM down underneath each other.
_com_tls = threading.local()

def _com_enter():
    cnt = getattr(_com_tls, "count", 0)
    if cnt == 0:
        try:
            comtypes.CoInitialize()
        except OSError as e:
            # RPC_E_CHANGED_MODE: the thread already has an apartment; use it.
            _dbg(f"CoInitialize failed (continuing): {e}")
    _com_tls.count = cnt + 1

def _com_exit():
    cnt = getattr(_com_tls, "count", 0) - 1
    if cnt <= 0:
        _com_tls.count = 0
        try:
            comtypes.CoUninitialize()
        except OSError:
            pass
    else:
        _com_tls.count = cnt

@contextmanager
def _com_context():
    _com_enter()
    try:
        yield
    finally:
        _com_exit()

_POLICY_CONFIG_INTERFACES_CACHE = None

def _get_policy_config_interfaces():
    """
    Get or create PolicyConfig interface definitions once and cache them.
    pycaw's own definitions are preferred; older pycaw builds lack policyconfig,
    so we fall back to a local IPolicyConfigVista definition.
    """
    global _POLICY_CONFIG_INTERFACES_CACHE

    if _POLICY_CONFIG_INTERFACES_CACHE is not None:
        return _POLICY_CONFIG_INTERFACES_CACHE

    try:
        from pycaw.policyconfig import IPolicyConfig, IPolicyConfigVista, CLSID_PolicyConfigClient
        _POLICY_CONFIG_INTERFACES_CACHE = (IPolicyConfig, IPolicyConfigVista, CLSID_PolicyConfigClient)
        return _POLICY_CONFIG_INTERFACES_CACHE
    except ImportError:
        pass

    CLSID_PolicyConfigClient = GUID("{294935CE-F637-4E7C-A41B-AB255460B862}")

    class IPolicyConfigVista(IUnknown):
        _iid_ = GUID("{568B9108-44BF-40B4-9006-86AFE5B5A620}")
        _methods_ = (
            COMMETHOD([], HRESULT, 'GetMixFormat', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['out'], ctypes.POINTER(ctypes.c_void_p), 'ppFormat')),
            COMMETHOD([], HRESULT, 'GetDeviceFormat', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], wintypes.BOOL, 'bDefault'), (['out'], ctypes.POINTER(ctypes.c_void_p), 'ppFormat')),
            COMMETHOD([], HRESULT, 'SetDeviceFormat', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], ctypes.c_void_p, 'pEndpointFormat'), (['in'], ctypes.c_void_p, 'mixFormat')),
            COMMETHOD([], HRESULT, 'GetProcessingPeriod', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], wintypes.BOOL, 'bDefault'), (['out'], ctypes.POINTER(ctypes.c_longlong), 'pmftDefaultPeriod'), (['out'], ctypes.POINTER(ctypes.c_longlong), 'pmftMinimumPeriod')),
            COMMETHOD([], HRESULT, 'SetProcessingPeriod', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], ctypes.POINTER(ctypes.c_longlong), 'pmftPeriod')),
            COMMETHOD([], HRESULT, 'GetShareMode', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['out'], ctypes.POINTER(ctypes.c_void_p), 'pMode')),
            COMMETHOD([], HRESULT, 'SetShareMode', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], ctypes.c_void_p, 'mode')),
            COMMETHOD([], HRESULT, 'GetPropertyValue', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], ctypes.POINTER(ctypes.c_void_p), 'key'), (['out'], ctypes.POINTER(ctypes.c_void_p), 'pv')),
            COMMETHOD([], HRESULT, 'SetPropertyValue', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], ctypes.POINTER(ctypes.c_void_p), 'key'), (['in'], ctypes.POINTER(ctypes.c_void_p), 'pv')),
            COMMETHOD([], HRESULT, 'SetDefaultEndpoint', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], wintypes.DWORD, 'role')),
            COMMETHOD([], HRESULT, 'SetEndpointVisibility', (['in'], wintypes.LPCWSTR, 'wszDeviceId'), (['in'], wintypes.BOOL, 'bVisible')),
        )

    IPolicyConfig = IPolicyConfigVista

    _POLICY_CONFIG_INTERFACES_CACHE = (IPolicyConfig, IPolicyConfigVista, CLSID_PolicyConfigClient)
    return _POLICY_CONFIG_INTERFACES_CACHE

def _get_policy_config():
    """
    Fresh PolicyConfig COM object supporting SetDefaultEndpoint.
    Must be called inside _com_context().
    """
    IPolicyConfig, IPolicyConfigVista, CLSID_PolicyConfigClient = _get_policy_config_interfaces()
    try:
        return CoCreateInstance(CLSID_PolicyConfigClient, interface=IPolicyConfig, clsctx=CLSCTX_ALL)
    except OSError:
        return CoCreateInstance(CLSID_PolicyConfigClient, interface=IPolicyConfigVista, clsctx=CLSCTX_ALL)

def _new_enumerator():
    return CoCreateInstance(CLSID_MMDeviceEnumerator, IMMDeviceEnumerator, CLSCTX_ALL)

def _friendly_names_by_id():
    """
    Build {device_id: FriendlyName} from pycaw's managed wrappers.
    Cheaper and less COM-lifetime sensitive than raw PropertyStore reads per device.
    Missing names fall back to the endpoint id in the caller.
    """
    names = {}
    with _com_context():
        for dev in AudioUtilities.GetAllDevices():
            try:
                dev_id = getattr(dev, "id", None) or dev.GetId()
                fn = getattr(dev, "FriendlyName", None)
            except (OSError, comtypes.COMError):
                continue
            if dev_id and fn:
                names[dev_id] = fn
    return names


class WindowsAudioBackend(AudioBackend):
    """
    IMMDeviceEnumerator / PolicyConfig backend.

    include_inactive: list disabled/unplugged/not-present endpoints too
    (reported with enabled=False).
    """

    def __init__(self, include_inactive=True):
        self.include_inactive = include_inactive

    def enumerate_output_devices(self):
        state_mask = DEVICE_STATE_ALL if self.include_inactive else DEVICE_STATE_ACTIVE
        try:
            with _com_context():
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", UserWarning)
                    try:
                        name_map = _friendly_names_by_id()
                    except (OSError, comtypes.COMError) as e:
                        _dbg(f"friendly name map failed, using ids: {e}")
                        name_map = {}

                    enumerator = _new_enumerator()
                    coll = enumerator.EnumAudioEndpoints(E_RENDER, state_mask)
                    out = []
                    for i in range(coll.GetCount()):
                        dev = coll.Item(i)
                        dev_id = dev.GetId()
                        try:
                            st = dev.GetState()
                        except (OSError, comtypes.COMError):
                            st = 0
                        active = bool(st & DEVICE_STATE_ACTIVE)
                        if not active:
                            _dbg(f"endpoint {dev_id} state={describe_state(st)}")
                        out.append(OSDevice(dev_id, name_map.get(dev_id) or dev_id, active))
                    _dbg(f"enumerate_output_devices: total={len(out)}")
                    return out
        except (OSError, comtypes.COMError) as e:
            raise EnumerationError(f"Audio endpoint enumeration failed: {e}") from e

    def get_default_output_device(self):
        try:
            with _com_context():
                enumerator = _new_enumerator()
                dev = enumerator.GetDefaultAudioEndpoint(E_RENDER, E_CONSOLE)
                return dev.GetId()
        except comtypes.COMError as e:
            # E_NOTFOUND: no playback endpoint is default right now.
            if getattr(e, "hresult", None) == -2147023728:  # 0x80070490
                return None
            raise EnumerationError(f"Default endpoint query failed: {e}") from e
        except OSError as e:
            raise EnumerationError(f"Default endpoint query failed: {e}") from e

    def set_default_output_device(self, device_id):
        """
        Apply to console, multimedia and communications. Partial failure is reported
        with per-role detail; the coordinator's verification decides the outcome.
        """
        _dbg(f"SetDefaultEndpoint start: id={device_id}")
        with _com_context():
            policy = _get_policy_config()
            results = {}
            last_err = None
            for rname, rval in SWITCH_ROLES:
                try:
                    policy.SetDefaultEndpoint(device_id, rval)
                    results[rname] = True
                except (OSError, comtypes.COMError) as e:
                    results[rname] = False
                    last_err = e
            if last_err is not None:
                details = ", ".join(f"{k}={'ok' if v else 'fail'}" for k, v in results.items())
                _log(f"SetDefaultEndpoint partial failure for {device_id}: {details}")
                raise RuntimeError(f"SetDefaultEndpoint failed for roles: {details}. Underlying error: {last_err}")
        _dbg("SetDefaultEndpoint done")
