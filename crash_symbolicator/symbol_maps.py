"""Loading user-supplied symbol maps.

A symbol map overrides an image's own symbol table. On disk it is either a
text file of ``<hex address> <name>`` lines, a JSON object or a property
list dictionary mapping addresses (numbers or hex strings) to names.
"""
from __future__ import annotations

import json
import logging
import plistlib
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple
from xml.parsers.expat import ExpatError

from .codec import detect_format, FORMAT_PLIST

logger = logging.getLogger(__name__)


def _address(key: Any) -> int:
    if isinstance(key, int):
        return key
    return int(str(key).strip(), 0)


def symbol_map_from_mapping(data: Mapping[Any, Any]) -> Dict[int, str]:
    """Normalize a mapping with numeric or string addresses."""
    result: Dict[int, str] = {}
    for key, name in data.items():
        try:
            result[_address(key)] = str(name)
        except ValueError:
            logger.warning("Skipping symbol map entry with bad address %r", key)
    return result


def parse_symbol_map_text(text: str) -> Dict[int, str]:
    """Parse ``<hex address> <name>`` lines; ``#`` starts a comment."""
    result: Dict[int, str] = {}
    for line_number, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            logger.warning("Skipping symbol map line %d: %r", line_number, line)
            continue
        try:
            address = int(parts[0], 16)
        except ValueError:
            logger.warning("Skipping symbol map line %d with bad address: %r", line_number, line)
            continue
        result.setdefault(address, parts[1].strip())
    return result


def load_symbol_map(path: str) -> Dict[int, str]:
    """
    Load a symbol map file.

    Raises:
        OSError: if the file cannot be read
        ValueError: if a JSON or property list file is not a dictionary
    """
    file_path = Path(path)
    data = file_path.read_bytes()

    if detect_format(data) == FORMAT_PLIST:
        try:
            content = plistlib.loads(data)
        except ExpatError as e:
            raise ValueError(f"Invalid property list symbol map {path}: {e}") from e
    elif file_path.suffix.lower() == ".json":
        content = json.loads(data.decode("utf-8"))
    else:
        return parse_symbol_map_text(data.decode("utf-8", errors="replace"))

    if not isinstance(content, dict):
        raise ValueError(f"Symbol map {path} is not a dictionary")
    return symbol_map_from_mapping(content)


def parse_symbol_map_arg(argument: str) -> Tuple[str, str]:
    """Split an ``IMAGE=FILE`` command-line argument."""
    image, sep, path = argument.partition("=")
    if not sep or not image or not path:
        raise ValueError(f"Expected IMAGE=FILE, got {argument!r}")
    return image, path
