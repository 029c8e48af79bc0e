"""Crash log parsing and rendering.

Two serializations are supported and are interchangeable:

- the text crash log written by the iOS crash reporter;
- a property list holding the same fields as a structured dictionary.

Legacy on-device property lists, which wrap a text log in a ``description``
string, are accepted as well.
"""
from __future__ import annotations

import logging
import plistlib
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from xml.parsers.expat import ExpatError

from .binary_image import BinaryImage
from .blame import BlameResult
from .errors import MalformedReport
from .report import Backtrace, CrashException, CrashReport, StackFrame, Thread
from .symbolicator import SymbolInfo

logger = logging.getLogger(__name__)

FORMAT_AUTO = "auto"
FORMAT_TEXT = "text"
FORMAT_PLIST = "plist"

_FORMAT_ALIASES = {
    "auto": FORMAT_AUTO,
    "text": FORMAT_TEXT,
    "plist": FORMAT_PLIST,
    "propertylist": FORMAT_PLIST,
    "property_list": FORMAT_PLIST,
}

# Section headers
LAST_EXCEPTION_RE = re.compile(r"^Last Exception Backtrace:\s*$")
APP_INFO_RE = re.compile(r"^Application Specific Information:\s*$")
THREAD_NAME_RE = re.compile(r"^Thread (\d+) name:\s*(.*?)\s*$")
THREAD_RE = re.compile(r"^Thread (\d+)( Crashed)?:\s*$")
THREAD_STATE_RE = re.compile(r"^Thread (\d+) crashed with (.+?):\s*$")
BLAME_RE = re.compile(r"^Blame:\s*$")
BINARY_IMAGES_RE = re.compile(r"^Binary Images:\s*$")

# Line contents
KEY_VALUE_RE = re.compile(r"^([^:\s][^:]*):\s*(.*?)\s*$")
FRAME_RE = re.compile(r"^(\d+)\s+(.*)$")
LOCATION_RE = re.compile(
    r"^(?P<symbol>.+?) \+ (?P<offset>\d+)"
    r"(?:\s+\((?P<source>.+):(?P<line>\d+)\))?\s*$"
)
HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")
REGISTER_RE = re.compile(r"([A-Za-z0-9_]+):\s+(\S+)")
IMAGE_RE = re.compile(
    r"^\s*(0x[0-9a-fA-F]+)"      # start
    r"\s+-\s+"
    r"(0x[0-9a-fA-F]+)\s+"       # end (inclusive)
    r"\+?(.+?)\s+"               # name
    r"(\S+)\s+"                  # architecture
    r"<([-0-9a-fA-F]*)>\s+"      # uuid
    r"(\S.*?)\s*$"               # path
)

EXCEPTION_TYPE_KEY = "Exception Type"
HEADER_KEY_WIDTH = 17
IMAGE_NAME_WIDTH = 30
REGISTERS_PER_LINE = 4


def parse_hex(token: str) -> Optional[int]:
    """Parse a 0x-prefixed hex token; None when it is not valid hex."""
    if not token or not HEX_RE.match(token):
        return None
    return int(token, 16)


def detect_format(data: bytes) -> str:
    head = data.lstrip(b"\xef\xbb\xbf \t\r\n")[:64]
    if head.startswith((b"bplist", b"<?xml", b"<plist", b"<!DOCTYPE plist")):
        return FORMAT_PLIST
    return FORMAT_TEXT


def parse(data: Union[bytes, str], format_hint: str = FORMAT_AUTO) -> CrashReport:
    """
    Parse a crash log.

    Args:
        data: Raw crash log contents
        format_hint: "auto", "text" or "plist"

    Returns:
        The parsed CrashReport

    Raises:
        MalformedReport: if the data is not a valid crash log in the format
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    fmt = _FORMAT_ALIASES.get(str(format_hint).lower())
    if fmt is None:
        raise ValueError(f"Unknown crash log format: {format_hint}")
    if fmt == FORMAT_AUTO:
        fmt = detect_format(data)

    if fmt == FORMAT_PLIST:
        return parse_property_list(data)
    text = data.decode("utf-8", errors="replace")
    return TextCrashLogParser(text).parse()


def render(report: CrashReport, as_property_list: bool = False) -> str:
    """Render a report as a text crash log or as an XML property list."""
    if as_property_list:
        return render_property_list(report)
    return render_text(report)


# --- Text format ---

class TextCrashLogParser:
    """Line-oriented parser for text crash logs."""

    class Mode:
        NORMAL = 0
        APP_INFO = 1
        EXCEPTION = 2
        THREAD = 3
        REGISTERS = 4
        BLAME = 5
        IMAGES = 6

    def __init__(self, text: str):
        self.lines = text.splitlines()
        self.mode = self.Mode.NORMAL
        self.process_info: Dict[str, str] = {}
        self.exception: Optional[CrashException] = None
        self.threads: Dict[int, Thread] = {}
        self.thread: Optional[Thread] = None
        self.register_state: List[Tuple[str, str]] = []
        self.register_state_title = ""
        self.app_info: List[str] = []
        self.blame: Dict[str, str] = {}
        self.images: Dict[int, BinaryImage] = {}
        self.seen_images_section = False
        # Frames whose image is only known by name, resolved once images are read
        self.pending: List[Tuple[StackFrame, str]] = []
        self.parsers = {
            self.Mode.NORMAL: self.parse_normal,
            self.Mode.APP_INFO: self.parse_app_info,
            self.Mode.EXCEPTION: self.parse_exception_backtrace,
            self.Mode.THREAD: self.parse_thread,
            self.Mode.REGISTERS: self.parse_registers,
            self.Mode.BLAME: self.parse_blame,
            self.Mode.IMAGES: self.parse_image,
        }

    def parse(self) -> CrashReport:
        for line_number, line in enumerate(self.lines, 1):
            if not line.strip():
                # Blank lines end every section except the header
                self.mode = self.Mode.NORMAL
                self.thread = None
                continue
            if self._switch_section(line, line_number):
                continue
            self.parsers[self.mode](line, line_number)
        return self._finish()

    def _switch_section(self, line: str, line_number: int) -> bool:
        if BINARY_IMAGES_RE.match(line):
            self.mode = self.Mode.IMAGES
            self.seen_images_section = True
            return True
        if self.mode == self.Mode.IMAGES:
            return False
        if LAST_EXCEPTION_RE.match(line):
            self._require_exception(line_number)
            self.mode = self.Mode.EXCEPTION
            return True
        if APP_INFO_RE.match(line):
            self.mode = self.Mode.APP_INFO
            return True
        if BLAME_RE.match(line):
            self.mode = self.Mode.BLAME
            return True
        match = THREAD_STATE_RE.match(line)
        if match:
            self.register_state_title = match.group(2)
            self.mode = self.Mode.REGISTERS
            return True
        match = THREAD_NAME_RE.match(line)
        if match:
            self._thread(int(match.group(1))).name = match.group(2)
            return True
        match = THREAD_RE.match(line)
        if match:
            self.thread = self._thread(int(match.group(1)))
            self.thread.crashed = bool(match.group(2))
            self.mode = self.Mode.THREAD
            return True
        return False

    def _thread(self, number: int) -> Thread:
        if number not in self.threads:
            self.threads[number] = Thread(number=number)
        return self.threads[number]

    def _require_exception(self, line_number: int):
        if self.exception is None:
            raise MalformedReport("Exception backtrace before 'Exception Type'",
                                  section="Last Exception Backtrace", line_number=line_number)

    def parse_normal(self, line: str, line_number: int):
        match = KEY_VALUE_RE.match(line)
        if not match:
            logger.warning("Ignoring unrecognized line %d: %s", line_number, line.strip())
            return
        key, value = match.group(1).strip(), match.group(2)
        if key == EXCEPTION_TYPE_KEY:
            self.exception = CrashException(type=value)
        elif self.exception is not None:
            self.exception.details[key] = value
        else:
            self.process_info[key] = value

    def parse_app_info(self, line: str, line_number: int):
        self.app_info.append(line)

    def parse_exception_backtrace(self, line: str, line_number: int):
        stripped = line.strip()
        if stripped.startswith("("):
            # Older logs list the backtrace as bare addresses: (0x1 0x2 ...)
            tokens = stripped.strip("()").split()
            for depth, token in enumerate(tokens):
                address = parse_hex(token)
                frame = StackFrame(depth=depth, address=address or 0)
                self.exception.backtrace.add_stack_frame(frame)
                if address is not None:
                    self.pending.append((frame, ""))
            return
        frame = self._parse_frame(line, line_number)
        if frame is not None:
            self.exception.backtrace.add_stack_frame(frame)

    def parse_thread(self, line: str, line_number: int):
        frame = self._parse_frame(line, line_number)
        if frame is not None:
            self.thread.backtrace.add_stack_frame(frame)

    def _parse_frame(self, line: str, line_number: int) -> Optional[StackFrame]:
        match = FRAME_RE.match(line.strip())
        if not match:
            logger.debug("Skipping non-frame line %d: %s", line_number, line.strip())
            return None
        depth, rest = int(match.group(1)), match.group(2)

        if "\t" in rest:
            image_name, _, location = rest.partition("\t")
        else:
            parts = rest.split(None, 1)
            image_name, location = parts[0], (parts[1] if len(parts) > 1 else "")
        image_name = image_name.strip()
        address_token, _, remainder = location.strip().partition(" ")

        address = parse_hex(address_token)
        if address is None:
            # A bad address leaves the frame unresolved; the parse goes on
            logger.warning("Malformed address %r on line %d", address_token, line_number)
            return StackFrame(depth=depth, address=0)

        frame = StackFrame(depth=depth, address=address)
        loc = LOCATION_RE.match(remainder.strip())
        if loc is None:
            self.pending.append((frame, image_name))
            return frame

        symbol = loc.group("symbol")
        image_address = parse_hex(symbol)
        if image_address is not None:
            frame.image_address = image_address
        elif symbol == image_name:
            # "Demo + 4112" is an offset into the image, not a symbol
            self.pending.append((frame, image_name))
        else:
            frame.symbol_info = SymbolInfo(
                name=loc.group("symbol"),
                offset=int(loc.group("offset")),
                source_path=loc.group("source"),
                source_line=int(loc.group("line")) if loc.group("line") else None,
            )
            self.pending.append((frame, image_name))
        return frame

    def parse_registers(self, line: str, line_number: int):
        for name, value in REGISTER_RE.findall(line):
            self.register_state.append((name, value))

    def parse_blame(self, line: str, line_number: int):
        match = KEY_VALUE_RE.match(line.strip())
        if match:
            self.blame[match.group(1).strip()] = match.group(2)

    def parse_image(self, line: str, line_number: int):
        match = IMAGE_RE.match(line)
        if not match:
            raise MalformedReport(f"Unrecognized binary image line: {line.strip()!r}",
                                  section="Binary Images", line_number=line_number)
        start, end = int(match.group(1), 16), int(match.group(2), 16)
        if end < start:
            raise MalformedReport("Binary image ends before it starts",
                                  section="Binary Images", line_number=line_number)
        self.images[start] = BinaryImage(
            path=match.group(6),
            address=start,
            size=end - start + 1,
            architecture=match.group(4),
            uuid=match.group(5),
        )

    def _resolve_pending(self):
        by_name = {}
        for image in self.images.values():
            by_name.setdefault(image.name, image)
        ordered = sorted(self.images.values(), key=lambda i: i.address)

        for frame, image_name in self.pending:
            image = by_name.get(image_name) if image_name else None
            if image is None:
                image = next((i for i in ordered if i.contains(frame.address)), None)
            if image is not None:
                frame.image_address = image.address

    def _finish(self) -> CrashReport:
        if "Process" not in self.process_info:
            raise MalformedReport("Missing 'Process' header field", section="Header")
        if self.exception is None:
            raise MalformedReport("Missing 'Exception Type' line", section="Exception")
        if not self.threads:
            raise MalformedReport("No thread backtraces found", section="Threads")
        crashed = [t for t in self.threads.values() if t.crashed]
        if len(crashed) != 1:
            raise MalformedReport(f"Expected exactly one crashed thread, found {len(crashed)}",
                                  section="Threads")
        if not self.seen_images_section or not self.images:
            raise MalformedReport("Missing or truncated binary images list",
                                  section="Binary Images")

        self._resolve_pending()
        process_path = self.process_info.get("Path")
        for image in self.images.values():
            image.is_crashed_process_image = bool(process_path) and image.path == process_path

        report = CrashReport(
            process_info=self.process_info,
            exception=self.exception,
            threads=[self.threads[n] for n in sorted(self.threads)],
            register_state=self.register_state,
            register_state_title=self.register_state_title,
            binary_images=self.images,
            application_specific_info="\n".join(self.app_info) if self.app_info else None,
        )
        report.is_symbolicated = any(f.symbol_info is not None for f in report.all_frames())
        if self.blame:
            report.blame_result = self._blame_result(report)
            report.is_blamed = report.blame_result is not None
        return report

    def _blame_result(self, report: CrashReport) -> Optional[BlameResult]:
        path = self.blame.get("Path")
        if not path:
            return None
        image = next((i for i in report.binary_images.values() if i.path == path), None)
        if image is not None:
            image.is_blamable = True
        install_date = None
        if self.blame.get("Install Date"):
            try:
                install_date = datetime.fromisoformat(self.blame["Install Date"])
            except ValueError:
                logger.warning("Bad blame install date: %s", self.blame["Install Date"])
        depth = self.blame.get("Frame", "")
        return BlameResult(
            path=path,
            image_address=image.address if image else 0,
            depth=int(depth) if depth.isdigit() else 0,
            package_id=self.blame.get("Package") or None,
            install_date=install_date,
        )


def _key_value_line(key: str, value: str) -> str:
    label = f"{key}:"
    return f"{label.ljust(max(HEADER_KEY_WIDTH, len(label) + 1))}{value}".rstrip()


def _frame_line(frame: StackFrame, images: Dict[int, BinaryImage]) -> str:
    image = images.get(frame.image_address)
    image_name = image.name if image else "???"
    info = frame.symbol_info
    if info is not None and info.name is not None:
        location = f"{info.name} + {info.offset}"
        if info.source_path:
            location += f" ({info.source_path}:{info.source_line or 0})"
    else:
        offset = max(0, frame.address - frame.image_address)
        location = f"0x{frame.image_address:x} + {offset}"
    return f"{frame.depth:<4}{image_name:<{IMAGE_NAME_WIDTH}}\t0x{frame.address:08x} {location}"


def render_text(report: CrashReport) -> str:
    """Render a report in the text crash log format."""
    out: List[str] = []

    for key, value in report.process_info.items():
        out.append(_key_value_line(key, value))
    out.append("")

    if report.exception is not None:
        out.append(_key_value_line(EXCEPTION_TYPE_KEY, report.exception.type))
        for key, value in report.exception.details.items():
            out.append(_key_value_line(key, value))
        out.append("")

    if report.application_specific_info:
        out.append("Application Specific Information:")
        out.extend(report.application_specific_info.splitlines())
        out.append("")

    if report.exception is not None and report.exception.backtrace.frames:
        out.append("Last Exception Backtrace:")
        for frame in report.exception.backtrace.frames:
            out.append(_frame_line(frame, report.binary_images))
        out.append("")

    for thread in report.threads:
        if thread.name:
            out.append(f"Thread {thread.number} name:  {thread.name}")
        out.append(f"Thread {thread.number}{' Crashed' if thread.crashed else ''}:")
        for frame in thread.backtrace.frames:
            out.append(_frame_line(frame, report.binary_images))
        out.append("")

    if report.register_state:
        crashed = report.crashed_thread
        number = crashed.number if crashed is not None else 0
        out.append(f"Thread {number} crashed with {report.register_state_title or 'Thread State'}:")
        for i in range(0, len(report.register_state), REGISTERS_PER_LINE):
            chunk = report.register_state[i:i + REGISTERS_PER_LINE]
            out.append("  " + "  ".join(f"{name:>6}: {value:<18}" for name, value in chunk).rstrip())
        out.append("")

    if report.blame_result is not None:
        blame = report.blame_result
        out.append("Blame:")
        out.append("    " + _key_value_line("Path", blame.path))
        out.append("    " + _key_value_line("Frame", str(blame.depth)))
        if blame.package_id:
            out.append("    " + _key_value_line("Package", blame.package_id))
        if blame.install_date:
            out.append("    " + _key_value_line("Install Date", blame.install_date.isoformat(sep=" ")))
        out.append("")

    out.append("Binary Images:")
    for image in sorted(report.binary_images.values(), key=lambda i: i.address):
        end = image.address + max(image.size, 1) - 1
        out.append(f"0x{image.address:x} - 0x{end:x} {image.name} {image.architecture or 'unknown'}  "
                   f"<{image.uuid}> {image.path}")
    out.append("")
    return "\n".join(out)


# --- Property list format ---

def _frame_to_plist(frame: StackFrame) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "depth": frame.depth,
        "address": frame.address,
        "imageAddress": frame.image_address,
    }
    info = frame.symbol_info
    if info is not None:
        symbol: Dict[str, Any] = {"offset": info.offset}
        if info.name is not None:
            symbol["name"] = info.name
        if info.source_path is not None:
            symbol["sourcePath"] = info.source_path
        if info.source_line is not None:
            symbol["sourceLine"] = info.source_line
        entry["symbol"] = symbol
    return entry


def _backtrace_to_plist(backtrace: Backtrace) -> List[Dict[str, Any]]:
    return [_frame_to_plist(frame) for frame in backtrace.frames]


def to_plist_dict(report: CrashReport) -> Dict[str, Any]:
    """Build the structured dictionary form of a report."""
    root: Dict[str, Any] = dict(report.properties)
    root["processInfo"] = dict(report.process_info)
    if report.exception is not None:
        root["exception"] = {
            "type": report.exception.type,
            "details": dict(report.exception.details),
            "backtrace": _backtrace_to_plist(report.exception.backtrace),
        }
    threads = []
    for thread in report.threads:
        entry: Dict[str, Any] = {
            "number": thread.number,
            "crashed": thread.crashed,
            "backtrace": _backtrace_to_plist(thread.backtrace),
        }
        if thread.name is not None:
            entry["name"] = thread.name
        threads.append(entry)
    root["threads"] = threads
    if report.register_state:
        root["registerState"] = {
            "title": report.register_state_title,
            "registers": [{"name": n, "value": v} for n, v in report.register_state],
        }
    root["binaryImages"] = {
        f"0x{image.address:x}": {
            "path": image.path,
            "size": image.size,
            "architecture": image.architecture,
            "uuid": image.uuid,
            "blamable": image.is_blamable,
        }
        for image in report.binary_images.values()
    }
    if report.application_specific_info is not None:
        root["applicationSpecificInformation"] = report.application_specific_info
    root["symbolicated"] = report.is_symbolicated
    root["blamed"] = report.is_blamed
    if report.blame_result is not None:
        blame = report.blame_result
        entry = {"path": blame.path, "imageAddress": blame.image_address, "depth": blame.depth}
        if blame.package_id:
            entry["package"] = blame.package_id
        if blame.install_date:
            entry["installDate"] = blame.install_date
        root["blame"] = entry
    return root


def render_property_list(report: CrashReport) -> str:
    """Render a report as an XML property list."""
    return plistlib.dumps(to_plist_dict(report), fmt=plistlib.FMT_XML,
                          sort_keys=False).decode("utf-8")


_STRUCTURED_KEYS = {
    "processInfo", "exception", "threads", "registerState", "binaryImages",
    "applicationSpecificInformation", "symbolicated", "blamed", "blame",
}


def _frame_from_plist(entry: Dict[str, Any]) -> StackFrame:
    frame = StackFrame(
        depth=int(entry["depth"]),
        address=_int(entry.get("address", 0)),
        image_address=_int(entry.get("imageAddress", 0)),
    )
    symbol = entry.get("symbol")
    if symbol is not None:
        frame.symbol_info = SymbolInfo(
            name=symbol.get("name"),
            offset=int(symbol.get("offset", 0)),
            source_path=symbol.get("sourcePath"),
            source_line=symbol.get("sourceLine"),
        )
    return frame


def _int(value: Any) -> int:
    """Integers may be stored as numbers or as hex strings."""
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            return 0
    return int(value)


def _backtrace_from_plist(frames: List[Dict[str, Any]]) -> Backtrace:
    backtrace = Backtrace()
    for entry in frames:
        backtrace.add_stack_frame(_frame_from_plist(entry))
    return backtrace


def parse_property_list(data: bytes) -> CrashReport:
    """Parse a crash log stored as a property list."""
    try:
        root = plistlib.loads(data)
    except (ValueError, ExpatError) as e:
        raise MalformedReport(f"Invalid property list: {e}", section="Property List") from e
    if not isinstance(root, dict):
        raise MalformedReport("Property list root is not a dictionary", section="Property List")

    if "threads" not in root and isinstance(root.get("description"), str):
        report = TextCrashLogParser(root["description"]).parse()
        report.properties = {k: v for k, v in root.items() if k != "description"}
        report.is_property_list = True
        return report

    section = "processInfo"
    try:
        process_info = {str(k): str(v) for k, v in root[section].items()}
        if "Process" not in process_info:
            raise MalformedReport("Missing 'Process' field", section=section)

        section = "exception"
        exception = None
        if root.get(section) is not None:
            exc = root[section]
            exception = CrashException(
                type=str(exc["type"]),
                details={str(k): str(v) for k, v in exc.get("details", {}).items()},
                backtrace=_backtrace_from_plist(exc.get("backtrace", [])),
            )

        section = "threads"
        threads = []
        for number, entry in enumerate(root[section]):
            threads.append(Thread(
                number=int(entry.get("number", number)),
                name=entry.get("name"),
                crashed=bool(entry.get("crashed", False)),
                backtrace=_backtrace_from_plist(entry.get("backtrace", [])),
            ))
        if not threads or sum(1 for t in threads if t.crashed) != 1:
            raise MalformedReport("Expected exactly one crashed thread", section=section)

        section = "registerState"
        registers = root.get(section) or {}
        register_state = [(str(r["name"]), str(r["value"])) for r in registers.get("registers", [])]

        section = "binaryImages"
        images: Dict[int, BinaryImage] = {}
        for key, entry in root[section].items():
            address = int(key, 0)
            images[address] = BinaryImage(
                path=entry["path"],
                address=address,
                size=int(entry["size"]),
                architecture=entry.get("architecture", ""),
                uuid=entry.get("uuid", ""),
                is_blamable=bool(entry.get("blamable", False)),
            )
        if not images:
            raise MalformedReport("No binary images", section=section)

        section = "blame"
        blame_result = None
        if root.get(section) is not None:
            blame = root[section]
            install_date = blame.get("installDate")
            blame_result = BlameResult(
                path=blame["path"],
                image_address=_int(blame.get("imageAddress", 0)),
                depth=int(blame.get("depth", 0)),
                package_id=blame.get("package"),
                install_date=install_date if isinstance(install_date, datetime) else None,
            )
    except MalformedReport:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedReport(f"Invalid or missing field: {e}", section=section) from e

    process_path = process_info.get("Path")
    for image in images.values():
        image.is_crashed_process_image = bool(process_path) and image.path == process_path

    report = CrashReport(
        process_info=process_info,
        exception=exception,
        threads=threads,
        register_state=register_state,
        register_state_title=str(registers.get("title", "")),
        binary_images=images,
        application_specific_info=root.get("applicationSpecificInformation"),
        properties={k: v for k, v in root.items() if k not in _STRUCTURED_KEYS},
        is_property_list=True,
    )
    report.is_symbolicated = bool(root.get("symbolicated", False))
    report.blame_result = blame_result
    report.is_blamed = bool(root.get("blamed", blame_result is not None))
    return report
