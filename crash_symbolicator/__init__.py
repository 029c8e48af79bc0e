"""iOS Crash Symbolicator package.

This package parses iOS crash logs and:
- Resolves backtrace addresses to symbol names and source locations
- Corrects for ASLR slides and honors user-supplied symbol maps
- Blames the binary image most likely responsible for a crash
- Re-renders reports as text crash logs or property lists
"""
from .errors import (
    SymbolicateError,
    MalformedReport,
    OverlappingImageRanges,
)
from .symbol_table import SymbolTableEntry, SymbolTableIndex
from .symbol_owner import SymbolOwner, StaticSymbolOwner, NmSymbolOwner
from .binary_image import BinaryImage, ImageRegistry
from .symbolicator import SymbolInfo, Symbolicator
from .packages import (
    PackageInfo,
    PackageDatabase,
    StaticPackageDatabase,
    DpkgPackageDatabase,
)
from .blame import BlameFilter, BlameResult, FilterKind, blame
from .demangler import demangle
from .report import (
    Backtrace,
    CrashException,
    CrashReport,
    StackFrame,
    Thread,
)
from .codec import parse, render
from .symbol_maps import load_symbol_map
from .config import Settings

__all__ = [
    # Errors
    "SymbolicateError",
    "MalformedReport",
    "OverlappingImageRanges",
    # Symbol tables
    "SymbolTableEntry",
    "SymbolTableIndex",
    "SymbolOwner",
    "StaticSymbolOwner",
    "NmSymbolOwner",
    # Images and symbolication
    "BinaryImage",
    "ImageRegistry",
    "SymbolInfo",
    "Symbolicator",
    # Blame
    "PackageInfo",
    "PackageDatabase",
    "StaticPackageDatabase",
    "DpkgPackageDatabase",
    "BlameFilter",
    "BlameResult",
    "FilterKind",
    "blame",
    "demangle",
    # Report model and codec
    "Backtrace",
    "CrashException",
    "CrashReport",
    "StackFrame",
    "Thread",
    "parse",
    "render",
    "load_symbol_map",
    "Settings",
]

__version__ = "1.0.0"
