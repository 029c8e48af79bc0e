"""Per-image symbol table index.

Ordering policy: entries are kept sorted by *descending* address, so the
nearest preceding symbol for a target address is the first entry whose
address is <= the target. Lookups bisect over the negated addresses, which
keeps the same ordering without any custom comparator.
"""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class SymbolTableEntry:
    """A single exported symbol."""
    address: int
    name: str


def _descending(entry: SymbolTableEntry) -> int:
    """Sort key placing higher addresses first."""
    return -entry.address


class SymbolTableIndex:
    """Immutable nearest-preceding-symbol index.

    Built once per binary image and shared read-only afterwards, so lookups
    are safe from any number of threads.
    """

    def __init__(self, entries: List[SymbolTableEntry]):
        self._entries = entries
        self._keys = [_descending(e) for e in entries]

    @classmethod
    def build(cls, symbols: Iterable[Tuple[int, str]]) -> "SymbolTableIndex":
        """
        Build an index from (address, name) pairs.

        When several symbols share an address, the first one seen wins and
        the later ones are discarded.
        """
        seen = {}
        for address, name in symbols:
            if address in seen or not name:
                continue
            seen[address] = SymbolTableEntry(address=int(address), name=name)
        # sorted() is stable, and dict order preserves first-seen order
        entries = sorted(seen.values(), key=_descending)
        return cls(entries)

    def lookup(self, target: int) -> Optional[SymbolTableEntry]:
        """Return the entry with the greatest address <= target, if any."""
        idx = bisect.bisect_left(self._keys, -target)
        if idx >= len(self._entries):
            return None
        return self._entries[idx]

    @property
    def entries(self) -> List[SymbolTableEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


EMPTY_INDEX = SymbolTableIndex([])
