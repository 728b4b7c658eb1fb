"""OLE2 compound document parser (legacy Office files).

Storages become directory items and streams become file items, so embedded
streams can be re-scanned like archive members.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ...logging import get_logger
from ...models import Heuristic, ItemKind, MetadataEntry, ParseResult, Severity, StructuredItem
from .base import MalformedArtifactError, StructuredParser

logger = get_logger("parsers.ole")

SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
_HEADER_SIZE = 512
_HEADER_DIFAT = 109
_ENDOFCHAIN = 0xFFFFFFFE
_FREESECT = 0xFFFFFFFF
_NOSTREAM = 0xFFFFFFFF
_MAX_REGULAR_SECTOR = 0xFFFFFFFA
_ENTRY_SIZE = 128

_STORAGE = 1
_STREAM = 2
_ROOT = 5

_ENCRYPTED_STREAMS = ("EncryptionInfo", "EncryptedPackage")
_MACRO_ENTRIES = ("_VBA_PROJECT_CUR", "VBA", "_VBA_PROJECT")
_OBJECT_POOL = "ObjectPool"

_WORD_IDENT = 0xA5EC
_WORD_ENCRYPTED = 0x0100
_BIFF_BOF = 0x0809
_BIFF_FILEPASS = 0x002F
_BIFF_SCAN = 64

_FILE_TYPES = (
    ("WordDocument", "Word"),
    ("Workbook", "Excel"),
    ("Book", "Excel"),
    ("PowerPoint Document", "PowerPoint"),
)


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    kind: int
    left: int
    right: int
    child: int
    start: int
    size: int


def _clean_name(raw: str) -> str:
    # Property-set streams start with a control character such as "\x05".
    return "".join(char for char in raw if char >= " ")


class CompoundFile:
    """Read-only view of an OLE2 compound file held in memory."""

    def __init__(self, data: bytes) -> None:
        if len(data) < _HEADER_SIZE or not data.startswith(SIGNATURE):
            raise MalformedArtifactError("Missing OLE2 signature")
        self.data = data
        major, byte_order, sector_shift, mini_shift = struct.unpack_from("<HHHH", data, 0x1A)
        if byte_order != 0xFFFE:
            raise MalformedArtifactError(f"Unexpected byte order mark {byte_order:#x}")
        if sector_shift not in (9, 12):
            raise MalformedArtifactError(f"Unsupported sector size 2^{sector_shift}")
        self.major_version = major
        self.sector_size = 1 << sector_shift
        self.mini_sector_size = 1 << mini_shift
        (
            fat_count,
            first_directory,
            _transaction,
            self.mini_cutoff,
            first_minifat,
            minifat_count,
            first_difat,
            difat_count,
        ) = struct.unpack_from("<IIIIIIII", data, 0x2C)

        self.fat = self._load_fat(fat_count, first_difat, difat_count)
        self.entries = self._load_directory(first_directory)
        if not self.entries or self.entries[0].kind != _ROOT:
            raise MalformedArtifactError("Missing root directory entry")
        root = self.entries[0]
        self.ministream = self._chain_bytes(root.start, root.size) if root.size else b""
        self.minifat = self._table(self._chain_bytes(first_minifat)) if minifat_count else []

    # ------------------------------------------------------------------
    # Sector plumbing

    def _sector(self, index: int) -> bytes:
        offset = (index + 1) * self.sector_size
        if index > _MAX_REGULAR_SECTOR or offset >= len(self.data):
            raise MalformedArtifactError(f"Sector {index} lies outside the file")
        return self.data[offset : offset + self.sector_size]

    @staticmethod
    def _table(raw: bytes) -> List[int]:
        count = len(raw) // 4
        return list(struct.unpack_from(f"<{count}I", raw, 0))

    def _load_fat(self, fat_count: int, first_difat: int, difat_count: int) -> List[int]:
        locations = list(struct.unpack_from(f"<{_HEADER_DIFAT}I", self.data, 0x4C))
        per_sector = self.sector_size // 4 - 1
        sector = first_difat
        seen: Set[int] = set()
        for _ in range(difat_count):
            if sector in (_ENDOFCHAIN, _FREESECT) or sector in seen:
                break
            seen.add(sector)
            values = self._table(self._sector(sector))
            locations.extend(values[:per_sector])
            sector = values[per_sector]

        fat: List[int] = []
        for location in locations[:fat_count]:
            if location == _FREESECT:
                continue
            fat.extend(self._table(self._sector(location)))
        return fat

    def _chain(self, start: int, table: List[int]) -> Iterator[int]:
        seen: Set[int] = set()
        sector = start
        while sector != _ENDOFCHAIN:
            if sector >= len(table) or sector in seen:
                raise MalformedArtifactError(f"Broken sector chain at {sector:#x}")
            seen.add(sector)
            yield sector
            sector = table[sector]

    def _chain_bytes(self, start: int, size: Optional[int] = None) -> bytes:
        raw = b"".join(self._sector(sector) for sector in self._chain(start, self.fat))
        return raw if size is None else raw[:size]

    def _mini_chain_bytes(self, start: int, size: int) -> bytes:
        step = self.mini_sector_size
        raw = b"".join(
            self.ministream[sector * step : (sector + 1) * step] for sector in self._chain(start, self.minifat)
        )
        return raw[:size]

    # ------------------------------------------------------------------
    # Directory

    def _load_directory(self, first_directory: int) -> List[DirectoryEntry]:
        raw = self._chain_bytes(first_directory)
        entries: List[DirectoryEntry] = []
        for offset in range(0, len(raw) - _ENTRY_SIZE + 1, _ENTRY_SIZE):
            (name_length,) = struct.unpack_from("<H", raw, offset + 0x40)
            name_bytes = raw[offset : offset + max(min(name_length, 64) - 2, 0)]
            kind = raw[offset + 0x42]
            left, right, child = struct.unpack_from("<III", raw, offset + 0x44)
            start, size = struct.unpack_from("<IQ", raw, offset + 0x74)
            if self.major_version == 3:
                size &= 0xFFFFFFFF
            entries.append(
                DirectoryEntry(
                    name=_clean_name(name_bytes.decode("utf-16-le", errors="replace")),
                    kind=kind,
                    left=left,
                    right=right,
                    child=child,
                    start=start,
                    size=size,
                )
            )
        return entries

    def _siblings(self, first: int, seen: Set[int]) -> List[int]:
        """In-order walk of one storage's sibling tree."""
        ordered: List[int] = []
        stack: List[int] = []
        current = first
        while True:
            while current != _NOSTREAM and current < len(self.entries) and current not in seen:
                seen.add(current)
                stack.append(current)
                current = self.entries[current].left
            if not stack:
                return ordered
            index = stack.pop()
            ordered.append(index)
            current = self.entries[index].right

    def walk(self) -> List[Tuple[str, DirectoryEntry]]:
        """Every storage and stream below the root with its slash-delimited path."""
        seen: Set[int] = {0}
        found: List[Tuple[str, DirectoryEntry]] = []
        pending: List[Tuple[int, str]] = [(self.entries[0].child, "")]
        while pending:
            first, prefix = pending.pop(0)
            for index in self._siblings(first, seen):
                entry = self.entries[index]
                path = prefix + entry.name
                found.append((path, entry))
                if entry.kind == _STORAGE:
                    pending.append((entry.child, path + "/"))
        return found

    def read(self, entry: DirectoryEntry) -> bytes:
        if entry.size == 0:
            return b""
        if entry.size < self.mini_cutoff:
            return self._mini_chain_bytes(entry.start, entry.size)
        return self._chain_bytes(entry.start, entry.size)


def _word_encrypted(stream: bytes) -> bool:
    if len(stream) < 12:
        return False
    (ident,) = struct.unpack_from("<H", stream, 0)
    (flags,) = struct.unpack_from("<H", stream, 0x0A)
    return ident == _WORD_IDENT and bool(flags & _WORD_ENCRYPTED)


def _workbook_encrypted(stream: bytes) -> bool:
    offset = 0
    for position in range(_BIFF_SCAN):
        if offset + 4 > len(stream):
            return False
        record, length = struct.unpack_from("<HH", stream, offset)
        if position == 0 and record != _BIFF_BOF:
            return False
        if record == _BIFF_FILEPASS:
            return True
        offset += 4 + length
    return False


def _file_type(names: Set[str]) -> str:
    for stream, label in _FILE_TYPES:
        if stream in names:
            return label
    return "Generic"


class OleParser(StructuredParser):
    """Flags macros, embedded objects and encryption in legacy Office documents."""

    mime_types = (
        "application/x-ole-storage",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
    )

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        compound = CompoundFile(data)
        items: List[StructuredItem] = []
        streams: Dict[str, bytes] = {}
        entries = compound.walk()
        for path, entry in entries:
            logger.debug("Entry: %s %s", entry.kind, path)
            if entry.kind == _STORAGE:
                items.append(StructuredItem(path=path, kind=ItemKind.DIRECTORY, size=0))
            elif entry.kind == _STREAM:
                payload = compound.read(entry)
                streams[path] = payload
                items.append(StructuredItem(path=path, kind=ItemKind.FILE, size=len(payload), data=payload))

        names = {entry.name for _, entry in entries}
        heuristics = [Heuristic(f"OLE file type: {_file_type(names)}", Severity.INFO)]
        if any(name in names for name in _ENCRYPTED_STREAMS):
            heuristics.append(Heuristic("Contains an encrypted stream", Severity.HIGH))
        if any(name in names for name in _MACRO_ENTRIES):
            heuristics.append(Heuristic("Contains a VBA project, likely to contain macros", Severity.HIGH))
        if _OBJECT_POOL in names:
            heuristics.append(
                Heuristic("List of objects in the file, may contain embedded objects", Severity.MEDIUM)
            )
        if _word_encrypted(streams.get("WordDocument", b"")) or _workbook_encrypted(streams.get("Workbook", b"")):
            heuristics.append(Heuristic("OLE file is encrypted", Severity.LOW))

        metadata = (
            MetadataEntry("OLE Streams", str(len(streams))),
            MetadataEntry("OLE Storages", str(len(items) - len(streams))),
        )
        return ParseResult(items=tuple(items), heuristics=tuple(heuristics), metadata=metadata)


__all__ = ["CompoundFile", "DirectoryEntry", "OleParser", "SIGNATURE"]
