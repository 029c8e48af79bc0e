"""Tests for the nearest-preceding symbol index."""
from crash_symbolicator.symbol_table import EMPTY_INDEX, SymbolTableEntry, SymbolTableIndex


def _index():
    return SymbolTableIndex.build([(0x1000, "foo"), (0x2000, "bar")])


def test_lookup_between_symbols():
    """An address past a symbol resolves to it with the distance as offset."""
    entry = _index().lookup(0x2050)
    assert entry.name == "bar"
    assert 0x2050 - entry.address == 0x50


def test_lookup_below_lowest_symbol():
    """Nothing precedes an address lower than every symbol."""
    assert _index().lookup(0x0500) is None


def test_lookup_exact_address():
    """A symbol's own address resolves to it with offset 0."""
    entry = _index().lookup(0x2000)
    assert entry == SymbolTableEntry(0x2000, "bar")


def test_lookup_first_symbol_range():
    index = _index()
    assert index.lookup(0x1000).name == "foo"
    assert index.lookup(0x1fff).name == "foo"


def test_entries_descending():
    """Entries are ordered from the highest address down, whatever the input order."""
    index = SymbolTableIndex.build([(0x10, "a"), (0x30, "c"), (0x20, "b")])
    assert [e.address for e in index.entries] == [0x30, 0x20, 0x10]


def test_duplicate_address_keeps_first():
    """Later symbols at an already-seen address are discarded."""
    index = SymbolTableIndex.build([(0x1000, "first"), (0x1000, "second")])
    assert len(index) == 1
    assert index.lookup(0x1004).name == "first"


def test_empty_names_skipped():
    index = SymbolTableIndex.build([(0x1000, ""), (0x800, "real")])
    assert index.lookup(0x1004).name == "real"


def test_empty_index():
    """An image without symbols yields no entry for any address."""
    assert not EMPTY_INDEX
    assert EMPTY_INDEX.lookup(0x1234) is None
    assert SymbolTableIndex.build([]).lookup(0) is None


def test_lookup_does_not_mutate():
    index = _index()
    before = index.entries
    for target in (0, 0x1000, 0x2050, 0xffffffff):
        index.lookup(target)
    assert index.entries == before
