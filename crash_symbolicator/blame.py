"""Crash attribution ("blame").

Walks the faulting backtrace from the innermost frame outwards and blames
the first binary image that is not filtered out.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from typing import Dict, FrozenSet, Iterable, List, Optional

from .binary_image import BinaryImage, ImageRegistry
from .packages import PackageDatabase, PackageInfo

logger = logging.getLogger(__name__)

class FilterKind(Enum):
    """Which attribute of a binary image a blame filter excludes by."""
    NONE = "none"
    BY_PATH = "path"
    BY_PACKAGE = "package"


@dataclass(frozen=True)
class BlameFilter:
    """
    Exclusion policy for blame.

    ``BY_PATH`` patterns are shell-style globs matched against the full path
    and the file name; a pattern ending in ``/`` excludes a whole directory.
    ``BY_PACKAGE`` patterns are package identifiers (globs allowed).
    """
    kind: FilterKind = FilterKind.NONE
    patterns: FrozenSet[str] = frozenset()

    @classmethod
    def none(cls) -> "BlameFilter":
        return cls()

    @classmethod
    def by_path(cls, patterns: Iterable[str]) -> "BlameFilter":
        return cls(FilterKind.BY_PATH, frozenset(patterns))

    @classmethod
    def by_package(cls, identifiers: Iterable[str]) -> "BlameFilter":
        return cls(FilterKind.BY_PACKAGE, frozenset(identifiers))

    def excludes_path(self, path: str) -> bool:
        if self.kind is not FilterKind.BY_PATH or not path:
            return False
        name = os.path.basename(path)
        for pattern in self.patterns:
            if pattern.endswith("/"):
                if path.startswith(pattern):
                    return True
            elif fnmatchcase(path, pattern) or fnmatchcase(name, pattern):
                return True
        return False

    def excludes_package(self, identifier: Optional[str]) -> bool:
        if self.kind is not FilterKind.BY_PACKAGE or not identifier:
            return False
        return any(fnmatchcase(identifier, pattern) for pattern in self.patterns)


@dataclass
class BlameResult:
    """Diagnostic annotations recorded for the blamed binary."""
    path: str
    image_address: int
    depth: int
    package_id: Optional[str] = None
    install_date: Optional[datetime] = None


def faulting_backtrace(report) -> List:
    """
    Frames to blame from, innermost first.

    The exception backtrace, when present, is the actual fault point and
    wins over the crashed thread's backtrace.
    """
    if report.exception is not None and report.exception.backtrace.frames:
        frames = report.exception.backtrace.frames
    else:
        crashed = report.crashed_thread
        frames = crashed.backtrace.frames if crashed is not None else []
    return sorted(frames, key=lambda f: f.depth)


class BlameEngine:
    """
    Selects the binary image responsible for a crash.

    Args:
        registry: Image registry of the report being blamed
        packages: Package database used by package filters and annotations
        own_path: Path of the binary hosting this symbolicator; never blamed
    """

    def __init__(self, registry: ImageRegistry, packages: Optional[PackageDatabase] = None,
                 own_path: Optional[str] = None):
        self.registry = registry
        self.packages = packages or PackageDatabase()
        self.own_path = own_path
        self._package_cache: Dict[str, Optional[PackageInfo]] = {}

    def _package(self, image: BinaryImage) -> Optional[PackageInfo]:
        if image.path not in self._package_cache:
            self._package_cache[image.path] = self.packages.package_for_path(image.path)
        return self._package_cache[image.path]

    def _skip_reason(self, image: Optional[BinaryImage], filters: BlameFilter) -> Optional[str]:
        if image is None:
            return "no image"
        if self.own_path and image.path == self.own_path:
            return "symbolicator host"
        if self.registry.is_system_image(image):
            return "system image"
        if filters.excludes_path(image.path):
            return "path filter"
        if filters.kind is FilterKind.BY_PACKAGE:
            package = self._package(image)
            if package is not None and filters.excludes_package(package.identifier):
                return "package filter"
        return None

    def clear(self, report):
        """Remove earlier blame annotations from a report."""
        for image in report.binary_images.values():
            image.is_blamable = False
        report.blame_result = None

    def blame(self, report, filters: Optional[BlameFilter] = None) -> Optional[BinaryImage]:
        """
        Blame one binary image for the report's crash.

        Earlier blame annotations are replaced, so re-running with other
        filters is safe.

        Returns:
            The blamed image, or None when every frame was filtered out
        """
        filters = filters or BlameFilter.none()
        self.clear(report)

        for frame in faulting_backtrace(report):
            image = self.registry.image_for_frame(frame)
            reason = self._skip_reason(image, filters)
            if reason:
                logger.debug("Frame %d skipped for blame: %s", frame.depth, reason)
                continue

            image.is_blamable = True
            package = self._package(image)
            report.blame_result = BlameResult(
                path=image.path,
                image_address=image.address,
                depth=frame.depth,
                package_id=package.identifier if package else None,
                install_date=package.install_date if package else None,
            )
            logger.info("Blamed %s (frame %d)", image.path, frame.depth)
            return image

        logger.info("No binary image could be blamed")
        return None


def blame(report, filters: Optional[BlameFilter] = None, registry: Optional[ImageRegistry] = None,
          packages: Optional[PackageDatabase] = None,
          own_path: Optional[str] = None) -> Optional[BinaryImage]:
    """Blame a binary image for ``report``; see ``BlameEngine.blame``."""
    if registry is None:
        registry = ImageRegistry(report.binary_images.values())
    return BlameEngine(registry, packages, own_path).blame(report, filters)
