"""Symbol name demangling.

Only the formatting contract lives here: a mangled name goes in, a readable
name comes out. The mangling grammars themselves are handled by the platform
demangler (the C++ runtime's ``__cxa_demangle``, ``c++filt``,
``swift-demangle``). Anything unrecognized comes back unchanged.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from functools import lru_cache
from typing import Optional

try:
    import ctypes
    import ctypes.util
    HAS_CTYPES = True
except ImportError:
    ctypes = None
    HAS_CTYPES = False

logger = logging.getLogger(__name__)

SWIFT_PREFIXES = ("$s", "$S", "_$s", "_$S", "_T0", "$e", "_$e")

CXXFILT_CANDIDATES = ("c++filt", "llvm-cxxfilt")
SWIFT_DEMANGLE_CANDIDATES = ("swift-demangle",)

TOOL_TIMEOUT = 10

_cxa_demangle = None
_libc_free = None
_runtime_loaded = False
_runtime_lock = threading.Lock()


def _load_cxx_runtime() -> bool:
    """Bind __cxa_demangle from the C++ runtime library, once."""
    global _runtime_loaded
    with _runtime_lock:
        if not _runtime_loaded:
            _bind_cxx_runtime()
            _runtime_loaded = True
    return _cxa_demangle is not None


def _bind_cxx_runtime():
    global _cxa_demangle, _libc_free
    if not HAS_CTYPES:
        return

    for lib_name in ("c++", "stdc++"):
        path = ctypes.util.find_library(lib_name)
        if not path:
            continue
        try:
            lib = ctypes.CDLL(path)
            func = lib.__cxa_demangle
        except (OSError, AttributeError):
            continue
        func.restype = ctypes.c_void_p
        func.argtypes = [ctypes.c_char_p, ctypes.c_char_p,
                         ctypes.POINTER(ctypes.c_size_t), ctypes.POINTER(ctypes.c_int)]
        _cxa_demangle = func
        break

    if _cxa_demangle is not None:
        try:
            libc = ctypes.CDLL(ctypes.util.find_library("c"))
            _libc_free = libc.free
            _libc_free.argtypes = [ctypes.c_void_p]
            _libc_free.restype = None
        except (OSError, AttributeError, TypeError):
            # Without free() the result buffers leak; still usable
            _libc_free = None


def _demangle_with_runtime(name: str) -> Optional[str]:
    if not _load_cxx_runtime():
        return None
    status = ctypes.c_int(0)
    try:
        result = _cxa_demangle(name.encode("utf-8"), None, None, ctypes.byref(status))
    except (ctypes.ArgumentError, UnicodeEncodeError):
        return None
    if not result:
        return None
    try:
        if status.value != 0:
            return None
        return ctypes.string_at(result).decode("utf-8", errors="replace")
    finally:
        if _libc_free is not None:
            _libc_free(result)


def _demangle_with_tool(name: str, candidates) -> Optional[str]:
    for candidate in candidates:
        tool = shutil.which(candidate)
        if not tool:
            continue
        try:
            proc = subprocess.run(
                [tool],
                input=name + "\n",
                capture_output=True, text=True, timeout=TOOL_TIMEOUT,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Demangler %s failed: %s", tool, e)
            continue
        if proc.returncode == 0:
            output = proc.stdout.strip()
            if output:
                return output
    return None


def is_itanium(name: str) -> bool:
    return name.startswith("_Z") or name.startswith("__Z")


def is_swift(name: str) -> bool:
    return name.startswith(SWIFT_PREFIXES)


@lru_cache(maxsize=8192)
def demangle(name: str) -> str:
    """
    Demangle a symbol name.

    Returns a readable signature for recognized C++ and Swift names, and the
    input unchanged for anything else. Never raises.
    """
    if not name or not isinstance(name, str):
        return name

    try:
        if is_itanium(name):
            # Darwin adds an extra leading underscore to C-level symbols
            mangled = name[1:] if name.startswith("__Z") else name
            readable = _demangle_with_runtime(mangled)
            if readable is None:
                readable = _demangle_with_tool(mangled, CXXFILT_CANDIDATES)
            if readable and readable != mangled:
                return readable
        elif is_swift(name):
            readable = _demangle_with_tool(name, SWIFT_DEMANGLE_CANDIDATES)
            if readable and readable != name:
                return readable
    except Exception as e:  # demangling must never surface an error
        logger.debug("Could not demangle %r: %s", name, e)
    return name
