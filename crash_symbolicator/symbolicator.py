"""Address-to-symbol resolution for crash report backtraces.

A ``Symbolicator`` is a context object: build one per run with the symbol
owner to consult and pass it to the report. Nothing here is process-global,
so independent runs (and tests) never share state.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .binary_image import BinaryImage, ImageRegistry, compute_slide
from .demangler import demangle
from .symbol_owner import SymbolOwner, image_keys, normalize_uuid
from .symbol_table import SymbolTableEntry, SymbolTableIndex

logger = logging.getLogger(__name__)

# image path or UUID -> {link-time address: symbol name}
SymbolMaps = Mapping[str, Mapping[int, str]]


@dataclass
class SymbolInfo:
    """Information about a resolved address.

    ``name`` is None when the address lies inside a known image but no
    symbol covers it.
    """
    name: Optional[str]
    offset: int
    source_path: Optional[str] = None
    source_line: Optional[int] = None


class Symbolicator:
    """
    Resolves raw addresses to symbols.

    Args:
        owner: Symbol owner providing symbol tables, link addresses and
            source lines. Defaults to one that knows nothing.
        demangle_names: Run resolved names through the demangler
        progress_callback: Callback for progress updates (message, current, total)
    """

    def __init__(self, owner: Optional[SymbolOwner] = None, demangle_names: bool = True,
                 progress_callback: Optional[Callable[[str, int, int], None]] = None):
        self.owner = owner or SymbolOwner()
        self.demangle_names = demangle_names
        self.progress_callback = progress_callback

        # id(map) -> (map, index); the map is kept to pin its id
        self._override_indexes: Dict[int, Tuple[Mapping[int, str], SymbolTableIndex]] = {}
        self._override_lock = threading.Lock()

        # Statistics
        self.stats = {
            'frames_resolved': 0,
            'frames_unresolved': 0,
            'frames_without_symbol': 0,
            'override_hits': 0,
        }
        self._stats_lock = threading.Lock()

    def _report_progress(self, message: str, current: int = 0, total: int = 0):
        """Report progress to callback if available."""
        if self.progress_callback:
            try:
                self.progress_callback(message, current, total)
            except Exception as e:
                logger.debug("Progress callback failed: %s", e)

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1

    def registry_for(self, images: Iterable[BinaryImage]) -> ImageRegistry:
        """Build an image registry that shares this symbolicator's owner."""
        return ImageRegistry(images, self.owner)

    def _override_index(self, override_map: Mapping[int, str]) -> SymbolTableIndex:
        key = id(override_map)
        with self._override_lock:
            cached = self._override_indexes.get(key)
            if cached is not None and cached[0] is override_map:
                return cached[1]
            index = SymbolTableIndex.build(override_map.items())
            self._override_indexes[key] = (override_map, index)
            return index

    def clear_override_cache(self):
        """Forget indexes built for override maps."""
        with self._override_lock:
            self._override_indexes.clear()

    def _format_name(self, entry: SymbolTableEntry) -> str:
        if self.demangle_names:
            return demangle(entry.name)
        return entry.name

    def resolve(self, address: int, image: BinaryImage,
                override_map: Optional[Mapping[int, str]] = None) -> SymbolInfo:
        """
        Resolve a raw runtime address inside an image.

        Args:
            address: Raw address captured in the backtrace
            image: Binary image owning the address
            override_map: Optional {link-time address: name} table that takes
                precedence over the image's own symbol table

        Returns:
            SymbolInfo; its name is None when no symbol precedes the address
        """
        adjusted = address - compute_slide(image, self.owner)

        entry = None
        if override_map:
            entry = self._override_index(override_map).lookup(adjusted)
            if entry is not None:
                self._count('override_hits')
        if entry is None:
            entry = image.symbol_index(self.owner).lookup(adjusted)

        if entry is None:
            # Offset into the image itself
            info = SymbolInfo(name=None, offset=max(0, address - image.address))
        else:
            info = SymbolInfo(name=self._format_name(entry), offset=adjusted - entry.address)

        source = self.owner.source_info(image, adjusted)
        if source:
            info.source_path, info.source_line = source[0], int(source[1])
        return info

    @staticmethod
    def override_for(image: BinaryImage,
                     symbol_maps: Optional[SymbolMaps]) -> Optional[Mapping[int, str]]:
        """Find the override map for an image by path or UUID."""
        if not symbol_maps:
            return None
        wanted = image_keys(image)
        for key, table in symbol_maps.items():
            if key == image.path or normalize_uuid(key) in wanted:
                return table
        return None

    def resolve_frame(self, frame, registry: ImageRegistry,
                      symbol_maps: Optional[SymbolMaps] = None):
        """
        Resolve one stack frame in place.

        A frame whose image is not registered stays unresolved; that is an
        expected outcome, not an error.
        """
        image = registry.image_for_frame(frame)
        if image is None:
            frame.symbol_info = None
            self._count('frames_unresolved')
            logger.debug("No image for frame %d at 0x%x", frame.depth, frame.address)
            return frame

        frame.image_address = image.address
        frame.symbol_info = self.resolve(frame.address, image,
                                         self.override_for(image, symbol_maps))
        if frame.symbol_info.name is None:
            self._count('frames_without_symbol')
        else:
            self._count('frames_resolved')
        return frame

    def symbolicate_frames(self, frames: List[Any], registry: ImageRegistry,
                           symbol_maps: Optional[SymbolMaps] = None,
                           max_workers: int = 1) -> int:
        """
        Resolve a batch of frames in place.

        Args:
            frames: Stack frames from any number of backtraces
            registry: Image registry of the report the frames belong to
            symbol_maps: Optional override maps keyed by image path or UUID
            max_workers: Resolve frames on a thread pool when greater than 1

        Returns:
            Number of frames that received symbol information
        """
        total = len(frames)
        self._report_progress(f"Symbolicating {total} frames...", 0, total)

        if max_workers <= 1 or total < 2:
            for i, frame in enumerate(frames, 1):
                self.resolve_frame(frame, registry, symbol_maps)
                self._report_progress("Symbolicating", i, total)
        else:
            completed = 0
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = [executor.submit(self.resolve_frame, frame, registry, symbol_maps)
                           for frame in frames]
                for future in as_completed(futures):
                    # Propagates errors raised by collaborators
                    future.result()
                    completed += 1
                    self._report_progress("Symbolicating", completed, total)

        self.clear_override_cache()
        resolved = sum(1 for frame in frames if frame.symbol_info is not None)
        logger.info("Symbolicated %d/%d frames", resolved, total)
        return resolved

    def get_statistics(self) -> Dict[str, Any]:
        """Get symbol resolution statistics."""
        return dict(self.stats)
