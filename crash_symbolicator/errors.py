"""Error types raised by the crash symbolicator.

Only structural problems are raised. Per-frame anomalies (unresolved frames,
bad addresses, missing blame) are absorbed and reflected in the report.
"""
from typing import Optional


class SymbolicateError(Exception):
    """Base class for all crash symbolicator errors."""


class MalformedReport(SymbolicateError):
    """The input is neither a valid text nor a valid property-list crash log."""

    def __init__(self, message: str, section: Optional[str] = None,
                 line_number: Optional[int] = None):
        self.section = section
        self.line_number = line_number
        location = []
        if section:
            location.append(f"section '{section}'")
        if line_number is not None:
            location.append(f"line {line_number}")
        if location:
            message = f"{message} ({', '.join(location)})"
        super().__init__(message)


class OverlappingImageRanges(SymbolicateError):
    """Two binary images registered for one report claim the same addresses."""

    def __init__(self, first, second):
        self.first = first
        self.second = second
        super().__init__(
            f"Binary image {first.path} [0x{first.address:x}-0x{first.end_address:x}) "
            f"overlaps {second.path} [0x{second.address:x}-0x{second.end_address:x})"
        )
