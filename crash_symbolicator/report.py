"""Crash report data model.

A ``CrashReport`` is built once by the codec, annotated in place by the
symbolicate and blame passes, and re-rendered afterwards. Exceptions and
threads both carry a composed ``Backtrace``.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .binary_image import BinaryImage, ImageRegistry
from .blame import BlameEngine, BlameFilter, BlameResult
from .packages import PackageDatabase
from .symbol_owner import SymbolOwner
from .symbolicator import SymbolInfo, SymbolMaps, Symbolicator

logger = logging.getLogger(__name__)


@dataclass
class StackFrame:
    """One frame of a backtrace; depth 0 is the innermost frame."""
    depth: int
    address: int
    image_address: int = 0
    symbol_info: Optional[SymbolInfo] = None


@dataclass
class Backtrace:
    """Stack frames ordered by increasing depth."""
    frames: List[StackFrame] = field(default_factory=list)

    def add_stack_frame(self, frame: StackFrame):
        self.frames.append(frame)

    def __iter__(self) -> Iterator[StackFrame]:
        return iter(self.frames)

    def __len__(self) -> int:
        return len(self.frames)


@dataclass
class CrashException:
    """The exception that caused the crash, with its unwind if recorded."""
    type: str
    details: Dict[str, str] = field(default_factory=dict)
    backtrace: Backtrace = field(default_factory=Backtrace)


@dataclass
class Thread:
    """A thread of the crashed process."""
    number: int
    name: Optional[str] = None
    crashed: bool = False
    backtrace: Backtrace = field(default_factory=Backtrace)


@dataclass
class CrashReport:
    """Parsed crash log."""
    # Header fields: Process, Path, Identifier, Version, OS Version, ...
    process_info: Dict[str, str] = field(default_factory=dict)
    exception: Optional[CrashException] = None
    threads: List[Thread] = field(default_factory=list)

    # Register state of the crashed thread
    register_state: List[Tuple[str, str]] = field(default_factory=list)
    register_state_title: str = ""

    # Load address -> image
    binary_images: Dict[int, BinaryImage] = field(default_factory=dict)

    application_specific_info: Optional[str] = None

    # Extra top-level property list keys, preserved on re-render
    properties: Dict[str, Any] = field(default_factory=dict)

    is_property_list: bool = False
    is_symbolicated: bool = False
    is_blamed: bool = False
    blame_result: Optional[BlameResult] = None

    @classmethod
    def from_data(cls, data, format_hint: str = "auto") -> "CrashReport":
        """Parse a crash log from bytes; see ``codec.parse``."""
        from .codec import parse
        return parse(data, format_hint)

    @classmethod
    def from_file(cls, filepath: str, format_hint: str = "auto") -> "CrashReport":
        """Read and parse a crash log file."""
        with open(filepath, "rb") as f:
            data = f.read()
        return cls.from_data(data, format_hint)

    @property
    def crashed_thread(self) -> Optional[Thread]:
        for thread in self.threads:
            if thread.crashed:
                return thread
        return None

    @property
    def crashed_process_image(self) -> Optional[BinaryImage]:
        for image in self.binary_images.values():
            if image.is_crashed_process_image:
                return image
        return None

    def backtraces(self) -> List[Backtrace]:
        result = []
        if self.exception is not None:
            result.append(self.exception.backtrace)
        result.extend(thread.backtrace for thread in self.threads)
        return result

    def all_frames(self) -> List[StackFrame]:
        return [frame for backtrace in self.backtraces() for frame in backtrace.frames]

    def symbolicate(self, symbolicator: Optional[Symbolicator] = None,
                    symbol_maps: Optional[SymbolMaps] = None,
                    max_workers: int = 1) -> bool:
        """
        Resolve every stack frame of every backtrace.

        Args:
            symbolicator: Symbolicator to use; a default one (no symbol
                owner) resolves only through ``symbol_maps``
            symbol_maps: Override maps keyed by image path or UUID
            max_workers: Resolve frames concurrently when greater than 1

        Returns:
            True once the pass has run

        Raises:
            OverlappingImageRanges: if the report's images overlap
        """
        symbolicator = symbolicator or Symbolicator()
        registry = symbolicator.registry_for(self.binary_images.values())
        frames = self.all_frames()
        symbolicator.symbolicate_frames(frames, registry, symbol_maps, max_workers)
        self.is_symbolicated = True
        return True

    def blame(self, filters: Optional[BlameFilter] = None,
              packages: Optional[PackageDatabase] = None,
              owner: Optional[SymbolOwner] = None,
              own_path: Optional[str] = None) -> bool:
        """
        Blame a binary image for the crash.

        Re-running replaces earlier blame annotations.

        Returns:
            True if an image was blamed
        """
        registry = ImageRegistry(self.binary_images.values(), owner)
        engine = BlameEngine(registry, packages, own_path)
        blamed = engine.blame(self, filters)
        self.is_blamed = blamed is not None
        return self.is_blamed

    @property
    def blamed_image(self) -> Optional[BinaryImage]:
        for image in self.binary_images.values():
            if image.is_blamable:
                return image
        return None

    def string_representation(self, as_property_list: Optional[bool] = None) -> str:
        """Render the report; defaults to the form it was parsed from."""
        from .codec import render
        if as_property_list is None:
            as_property_list = self.is_property_list
        return render(self, as_property_list)

    def write_to_file(self, filepath: str, force_property_list: bool = False) -> bool:
        """
        Write the rendered report to a file.

        Returns:
            True on success; failures are logged
        """
        as_plist = force_property_list or self.is_property_list
        content = self.string_representation(as_plist)
        try:
            directory = os.path.dirname(os.path.abspath(filepath))
            os.makedirs(directory, exist_ok=True)
            with open(filepath, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            logger.error("Failed to write crash report to %s: %s", filepath, e)
            return False
        logger.info("Wrote crash report to %s", filepath)
        return True
