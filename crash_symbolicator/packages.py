"""Package metadata collaborators.

Blame can skip binaries by the package that installed them, and annotates
the blamed binary with its package and install date. This module maps a
file path to the package that owns it.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class PackageInfo:
    """An installed package."""
    identifier: str
    name: str = ""
    version: str = ""
    install_date: Optional[datetime] = None


class PackageDatabase:
    """Interface: look up the package owning a file. Knows no packages."""

    def package_for_path(self, path: str) -> Optional[PackageInfo]:
        return None


class StaticPackageDatabase(PackageDatabase):
    """Package database backed by an in-memory {path: PackageInfo} map."""

    def __init__(self, packages: Optional[Mapping[str, PackageInfo]] = None):
        self._packages = dict(packages or {})

    def package_for_path(self, path: str) -> Optional[PackageInfo]:
        return self._packages.get(path)


def parse_control_stanzas(text: str) -> Iterator[Dict[str, str]]:
    """Parse Debian control-file stanzas (``Key: value`` blocks)."""
    stanza: Dict[str, str] = {}
    last_key = None
    for line in text.splitlines():
        if not line.strip():
            if stanza:
                yield stanza
            stanza, last_key = {}, None
            continue
        if line[0] in " \t":
            # Continuation line
            if last_key:
                stanza[last_key] += "\n" + line.strip()
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        last_key = key.strip()
        stanza[last_key] = value.strip()
    if stanza:
        yield stanza


class DpkgPackageDatabase(PackageDatabase):
    """
    Package database read from a dpkg installation.

    Ownership comes from ``var/lib/dpkg/info/<package>.list`` files, names
    and versions from ``var/lib/dpkg/status``. The install date is the
    modification time of the package's ``.list`` file, which dpkg rewrites
    on every install or upgrade.

    Args:
        root: Filesystem root holding ``var/lib/dpkg`` (``/`` on device, or a
            copy of a device's filesystem)
    """

    def __init__(self, root: str = "/"):
        self.root = Path(root or "/")
        self.dpkg_dir = self.root / "var" / "lib" / "dpkg"
        self._owners: Optional[Dict[str, str]] = None
        self._status: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        with self._lock:
            if self._owners is None:
                self._owners = self._read_owners()
                self._status = self._read_status()
            return self._owners

    def _read_owners(self) -> Dict[str, str]:
        owners: Dict[str, str] = {}
        info_dir = self.dpkg_dir / "info"
        if not info_dir.is_dir():
            logger.debug("No dpkg info directory at %s", info_dir)
            return owners
        for list_file in sorted(info_dir.glob("*.list")):
            package_id = list_file.stem.split(":", 1)[0]
            try:
                content = list_file.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Could not read %s: %s", list_file, e)
                continue
            for line in content.splitlines():
                line = line.strip()
                if line and line != "/." and line not in owners:
                    owners[line] = package_id
        logger.debug("Loaded %d owned paths from %s", len(owners), info_dir)
        return owners

    def _read_status(self) -> Dict[str, Dict[str, str]]:
        status_file = self.dpkg_dir / "status"
        try:
            text = status_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return {}
        return {s["Package"]: s for s in parse_control_stanzas(text) if "Package" in s}

    def _install_date(self, package_id: str) -> Optional[datetime]:
        list_file = self.dpkg_dir / "info" / f"{package_id}.list"
        try:
            return datetime.fromtimestamp(os.path.getmtime(list_file))
        except OSError:
            return None

    def package_for_path(self, path: str) -> Optional[PackageInfo]:
        """Return the package that installed the file at ``path``, if any."""
        owners = self._load()
        package_id = owners.get(path)
        if package_id is None:
            return None
        stanza = self._status.get(package_id, {})
        return PackageInfo(
            identifier=package_id,
            name=stanza.get("Name", package_id),
            version=stanza.get("Version", ""),
            install_date=self._install_date(package_id),
        )
