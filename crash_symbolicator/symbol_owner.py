"""Symbol Owner collaborators.

A symbol owner knows, for a loaded binary image, its exported symbols and
Objective-C methods, the base address it was linked at and (optionally) how
to map an address to a source file and line. Decoding executable headers is
the owner's business; the symbolicator only consumes what an owner hands back.
"""
from __future__ import annotations

import bisect
import logging
import os
import shutil
import subprocess
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)

# Symbols the static linker places at the start of the __TEXT segment
HEADER_SYMBOLS = (
    "__mh_execute_header",
    "__mh_dylib_header",
    "__mh_bundle_header",
    "__mh_dylinker_header",
)

# On device, OS libraries under these prefixes are mapped from the dyld shared cache
SHARED_CACHE_PATH_PREFIXES = (
    "/System/",
    "/usr/lib/",
)

OBJC_METHOD_PREFIXES = ("-[", "+[")


def normalize_uuid(uuid: Optional[str]) -> str:
    """Normalize an image UUID for comparisons (lowercase, no dashes)."""
    return (uuid or "").replace("-", "").strip().lower()


def image_keys(image) -> List[str]:
    """Keys an image may be registered under: its path and its UUID."""
    keys = []
    if image.path:
        keys.append(image.path)
    uuid = normalize_uuid(image.uuid)
    if uuid:
        keys.append(uuid)
    return keys


def is_objc_method(name: str) -> bool:
    return name.startswith(OBJC_METHOD_PREFIXES)


class SymbolOwner:
    """Interface for symbol table providers.

    The default implementation has no symbols, so every image resolves to
    "inside a known image, no symbol". It guesses shared cache membership
    from the image path.
    """

    def symbols(self, image) -> Iterable[Tuple[int, str]]:
        """Return (link-time address, name) pairs for an image."""
        return ()

    def methods(self, image) -> Iterable[Tuple[int, str]]:
        """Return (link-time address, ``-[Class selector]``) pairs for an image."""
        return ()

    def is_encrypted(self, image) -> bool:
        """Encrypted binaries have no readable symbol or method tables."""
        return False

    def declared_base_address(self, image) -> Optional[int]:
        """Return the address the image was linked at, or None if unknown."""
        return None

    def source_info(self, image, address: int) -> Optional[Tuple[str, int]]:
        """Map a link-time address to (source path, line number)."""
        return None

    def shared_cache_range(self) -> Optional[Tuple[int, int]]:
        """Return the [start, end) range of the mapped shared cache, if any."""
        return None

    def is_from_shared_cache(self, image) -> bool:
        return image.path.startswith(SHARED_CACHE_PATH_PREFIXES)


class StaticSymbolOwner(SymbolOwner):
    """
    Symbol owner backed by in-memory tables.

    Tables, base addresses and line tables are keyed by image path or UUID.

    Args:
        tables: key -> {address: name} or iterable of (address, name)
        base_addresses: key -> declared (link-time) base address
        source_lines: key -> {address: (source path, line)}; an address maps
            to the nearest preceding line entry
        shared_cache: optional (start, end) of the shared cache mapping
        shared_cache_images: keys of images that live in the shared cache;
            when omitted, membership is guessed from the image path
        methods: key -> {address: "-[Class selector]"}
        encrypted_images: keys of images whose tables cannot be read
    """

    def __init__(self, tables: Optional[Mapping[str, object]] = None,
                 base_addresses: Optional[Mapping[str, int]] = None,
                 source_lines: Optional[Mapping[str, Mapping[int, Tuple[str, int]]]] = None,
                 shared_cache: Optional[Tuple[int, int]] = None,
                 shared_cache_images: Optional[Iterable[str]] = None,
                 methods: Optional[Mapping[str, object]] = None,
                 encrypted_images: Iterable[str] = ()):
        self._tables = {self._key(k): v for k, v in (tables or {}).items()}
        self._methods = {self._key(k): v for k, v in (methods or {}).items()}
        self._bases = {self._key(k): v for k, v in (base_addresses or {}).items()}
        self._lines: Dict[str, Tuple[List[int], List[Tuple[str, int]]]] = {}
        for key, lines in (source_lines or {}).items():
            addresses = sorted(lines)
            self._lines[self._key(key)] = (addresses, [lines[a] for a in addresses])
        self._shared_cache = shared_cache
        self._shared_cache_images: Optional[Set[str]] = None
        if shared_cache_images is not None:
            self._shared_cache_images = {self._key(k) for k in shared_cache_images}
        self._encrypted: Set[str] = {self._key(k) for k in encrypted_images}

    @staticmethod
    def _key(key: str) -> str:
        # UUIDs are looked up normalized; paths always start with a slash
        return key if key.startswith("/") else normalize_uuid(key)

    def _find(self, table: Mapping[str, object], image):
        for key in image_keys(image):
            if key in table:
                return table[key]
        return None

    @staticmethod
    def _pairs(table) -> List[Tuple[int, str]]:
        if table is None:
            return []
        if isinstance(table, Mapping):
            return list(table.items())
        return list(table)

    def symbols(self, image) -> Iterable[Tuple[int, str]]:
        return self._pairs(self._find(self._tables, image))

    def methods(self, image) -> Iterable[Tuple[int, str]]:
        return self._pairs(self._find(self._methods, image))

    def is_encrypted(self, image) -> bool:
        return any(key in self._encrypted for key in image_keys(image))

    def declared_base_address(self, image) -> Optional[int]:
        return self._find(self._bases, image)

    def source_info(self, image, address: int) -> Optional[Tuple[str, int]]:
        lines = self._find(self._lines, image)
        if not lines:
            return None
        addresses, locations = lines
        idx = bisect.bisect_right(addresses, address) - 1
        if idx < 0:
            return None
        return locations[idx]

    def shared_cache_range(self) -> Optional[Tuple[int, int]]:
        return self._shared_cache

    def is_from_shared_cache(self, image) -> bool:
        if self._shared_cache_images is None:
            return super().is_from_shared_cache(image)
        return any(key in self._shared_cache_images for key in image_keys(image))


class NmSymbolOwner(SymbolOwner):
    """
    Symbol owner that reads symbol tables with ``nm`` from files on disk.

    Binaries are looked up beneath ``system_root``, so a copy of a device's
    filesystem can be used to symbolicate that device's crash logs. OS
    libraries missing from the copy are assumed to live in the shared cache.
    """

    # Enable verbose logging of nm invocations
    VERBOSE = False

    NM_CANDIDATES = ("nm", "llvm-nm")

    def __init__(self, system_root: str = "/", nm_path: Optional[str] = None,
                 timeout: int = 60):
        self.system_root = system_root or "/"
        self.nm_path = nm_path or self._find_nm()
        self.timeout = timeout
        # (path, arch) -> (symbols, methods, declared base)
        self._cache: Dict[Tuple[str, str], Tuple[List[Tuple[int, str]], List[Tuple[int, str]],
                                                 Optional[int]]] = {}
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock = threading.Lock()

    def _find_nm(self) -> Optional[str]:
        for candidate in self.NM_CANDIDATES:
            path = shutil.which(candidate)
            if path:
                return path
        return None

    def _log(self, message: str):
        """Log a message if verbose mode is enabled."""
        if self.VERBOSE:
            logger.info("[NM] %s", message)
        else:
            logger.debug("[NM] %s", message)

    def local_path(self, image_path: str) -> str:
        """Map a device path to the corresponding file under the system root."""
        return os.path.join(self.system_root, image_path.lstrip("/"))

    def _command(self, path: str, architecture: str) -> List[str]:
        cmd = [self.nm_path, "-n"]
        if architecture:
            if "llvm" in os.path.basename(self.nm_path):
                cmd.append(f"--arch={architecture}")
            else:
                cmd.extend(["-arch", architecture])
        cmd.append(path)
        return cmd

    def _parse_output(self, output: str):
        """Split nm output into (symbols, Objective-C methods, declared base)."""
        symbols = []
        methods = []
        base = None
        for line in output.splitlines():
            parts = line.split(None, 2)
            if len(parts) != 3:
                continue  # undefined symbols carry no address
            address_text, sym_type, name = parts
            try:
                address = int(address_text, 16)
            except ValueError:
                continue
            if name in HEADER_SYMBOLS:
                base = address
                continue
            if sym_type not in ("T", "t"):
                continue
            if is_objc_method(name):
                methods.append((address, name))
                continue
            # Mach-O prefixes C-level names with an underscore
            if name.startswith("_"):
                name = name[1:]
            symbols.append((address, name))
        return symbols, methods, base

    def _run_nm(self, image):
        result = ([], [], None)
        path = self.local_path(image.path)
        if not self.nm_path:
            self._log("No nm executable available")
        elif not os.path.isfile(path):
            self._log(f"Binary not found under system root: {path}")
        else:
            try:
                proc = subprocess.run(
                    self._command(path, image.architecture),
                    capture_output=True, text=True, timeout=self.timeout,
                )
                if proc.returncode == 0:
                    result = self._parse_output(proc.stdout)
                    self._log(f"Read {len(result[0])} symbols and {len(result[1])} methods from {path}")
                else:
                    logger.warning("nm failed for %s: %s", path, proc.stderr.strip())
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning("Could not run nm on %s: %s", path, e)
        return result

    def _load(self, image):
        key = (image.path, image.architecture or "")
        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        # nm runs at most once per binary; other binaries load in parallel
        with key_lock:
            if key not in self._cache:
                self._cache[key] = self._run_nm(image)
            return self._cache[key]

    def symbols(self, image) -> Iterable[Tuple[int, str]]:
        return self._load(image)[0]

    def methods(self, image) -> Iterable[Tuple[int, str]]:
        return self._load(image)[1]

    def declared_base_address(self, image) -> Optional[int]:
        return self._load(image)[2]

    def is_from_shared_cache(self, image) -> bool:
        return (super().is_from_shared_cache(image)
                and not os.path.isfile(self.local_path(image.path)))
