"""Binary images loaded in a crashed process, and the registry over them."""
from __future__ import annotations

import bisect
import logging
import os
import threading
from dataclasses import dataclass, field
from itertools import chain
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import OverlappingImageRanges
from .symbol_owner import SymbolOwner
from .symbol_table import EMPTY_INDEX, SymbolTableIndex

logger = logging.getLogger(__name__)


@dataclass
class BinaryImage:
    """A binary image mapped into the crashed process."""
    path: str
    address: int
    size: int
    architecture: str = ""
    uuid: str = ""
    is_blamable: bool = False
    is_crashed_process_image: bool = False

    # One-time-initialization cell for the symbol table index
    _index: Optional[SymbolTableIndex] = field(default=None, init=False, repr=False, compare=False)
    _index_lock: threading.Lock = field(default_factory=threading.Lock, init=False,
                                        repr=False, compare=False)

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def end_address(self) -> int:
        """First address past the end of the image."""
        return self.address + self.size

    def contains(self, address: int) -> bool:
        return self.address <= address < self.end_address

    def symbol_index(self, owner: SymbolOwner) -> SymbolTableIndex:
        """
        Return the image's symbol table index, building it on first use.

        Symbols and Objective-C methods share one index, so whichever lies
        nearest below an address names it. At equal addresses the symbol
        wins. Encrypted images get an empty index.

        The build runs at most once even when several threads ask for the
        index at the same time; every caller gets the same shared index.
        """
        index = self._index
        if index is None:
            with self._index_lock:
                if self._index is None:
                    if owner.is_encrypted(self):
                        logger.debug("Not reading symbols of encrypted image %s", self.path)
                        self._index = EMPTY_INDEX
                    else:
                        self._index = SymbolTableIndex.build(
                            chain(owner.symbols(self), owner.methods(self)))
                        logger.debug("Built symbol index for %s (%d entries)",
                                     self.path, len(self._index))
                index = self._index
        return index

    @property
    def has_symbol_index(self) -> bool:
        return self._index is not None


def compute_slide(image: BinaryImage, owner: SymbolOwner) -> int:
    """ASLR slide: load address minus the address the image was linked at.

    An image whose link address the owner does not know is treated as
    unslid.
    """
    declared = owner.declared_base_address(image)
    if declared is None:
        return 0
    return image.address - declared


class ImageRegistry:
    """
    Address-space map of a crash report's binary images.

    Args:
        images: The report's binary images, in any order
        owner: Symbol owner supplying declared base addresses and the
            shared cache range

    Raises:
        OverlappingImageRanges: if two images claim the same address
    """

    def __init__(self, images: Iterable[BinaryImage], owner: Optional[SymbolOwner] = None):
        self.owner = owner or SymbolOwner()
        self._images: List[BinaryImage] = sorted(images, key=lambda i: (i.address, -i.size, i.path))
        self._by_address: Dict[int, BinaryImage] = {}

        previous = None
        for image in self._images:
            # Two images at one load address clash even when one is empty
            if image.address in self._by_address:
                raise OverlappingImageRanges(self._by_address[image.address], image)
            if previous is not None and image.address < previous.end_address:
                raise OverlappingImageRanges(previous, image)
            if image.size > 0:
                previous = image
            self._by_address[image.address] = image
        self._starts = [image.address for image in self._images]

        self._shared_cache = self.owner.shared_cache_range()
        self._shared_cache_images = [i for i in self._images if self.owner.is_from_shared_cache(i)]

    def __iter__(self) -> Iterator[BinaryImage]:
        return iter(self._images)

    def __len__(self) -> int:
        return len(self._images)

    def in_shared_cache(self, address: int) -> bool:
        if not self._shared_cache:
            return False
        start, end = self._shared_cache
        return start <= address < end

    def image_at(self, image_address: int) -> Optional[BinaryImage]:
        """Return the image loaded exactly at the given base address."""
        return self._by_address.get(image_address)

    def image_containing(self, address: int) -> Optional[BinaryImage]:
        """Return the image whose range holds the address, if any."""
        if self.in_shared_cache(address):
            for image in self._shared_cache_images:
                if image.contains(address):
                    return image

        idx = bisect.bisect_right(self._starts, address) - 1
        if idx < 0:
            return None
        image = self._images[idx]
        if image.contains(address):
            return image
        return None

    def image_for_frame(self, frame) -> Optional[BinaryImage]:
        """
        Return the image owning a stack frame.

        Frames name their image by load address. A frame whose image address
        is unknown (0) falls back to a range search on its own address.
        """
        if frame.image_address:
            return self.image_at(frame.image_address)
        if frame.address:
            return self.image_containing(frame.address)
        return None

    def slide_for(self, image: BinaryImage) -> int:
        return compute_slide(image, self.owner)

    def is_system_image(self, image: BinaryImage) -> bool:
        """OS images are the ones mapped from the dyld shared cache."""
        return self.owner.is_from_shared_cache(image)
