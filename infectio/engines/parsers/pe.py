"""Portable Executable parser: recovers the import directory."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, cast

from ...logging import get_logger
from ...models import MetadataEntry, ParseResult
from .base import MalformedArtifactError, StructuredParser

logger = get_logger("parsers.pe")

_PE32 = 0x10B
_PE32_PLUS = 0x20B
_IMPORT_DIRECTORY = 1
_DESCRIPTOR_SIZE = 20
_SECTION_SIZE = 40
_MAX_DESCRIPTORS = 4096
_MAX_THUNKS = 65536

_MACHINES = {
    0x14C: "i386",
    0x8664: "x86-64",
    0x1C0: "ARM",
    0xAA64: "ARM64",
}


def _read_u16le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 2 > len(buf):
        raise MalformedArtifactError(f"Read past end of image at {offset:#x}")
    return int(cast(Tuple[int], struct.unpack_from("<H", buf, offset))[0])


def _read_u32le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 4 > len(buf):
        raise MalformedArtifactError(f"Read past end of image at {offset:#x}")
    return int(cast(Tuple[int], struct.unpack_from("<I", buf, offset))[0])


def _read_u64le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 8 > len(buf):
        raise MalformedArtifactError(f"Read past end of image at {offset:#x}")
    return int(cast(Tuple[int], struct.unpack_from("<Q", buf, offset))[0])


def _read_c_string(buf: bytes, start: int, limit: int = 512) -> str:
    if start < 0 or start >= len(buf):
        return ""
    raw = buf[start : start + limit]
    nul = raw.find(b"\x00")
    if nul >= 0:
        raw = raw[:nul]
    return raw.decode("ascii", errors="replace")


@dataclass(frozen=True)
class _Section:
    virtual_address: int
    virtual_size: int
    raw_size: int
    raw_offset: int

    def contains(self, rva: int) -> bool:
        span = max(self.virtual_size, self.raw_size)
        return self.virtual_address <= rva < self.virtual_address + span


@dataclass(frozen=True)
class _Image:
    data: bytes
    machine: int
    is_64bit: bool
    import_rva: int
    sections: Tuple[_Section, ...]

    def offset_of(self, rva: int) -> Optional[int]:
        for section in self.sections:
            if section.contains(rva):
                return rva - section.virtual_address + section.raw_offset
        return None


def _load_image(data: bytes) -> _Image:
    if not data.startswith(b"MZ"):
        raise MalformedArtifactError("Missing MZ header")
    pe_offset = _read_u32le(data, 0x3C)
    if data[pe_offset : pe_offset + 4] != b"PE\x00\x00":
        raise MalformedArtifactError("Missing PE signature")

    coff = pe_offset + 4
    machine = _read_u16le(data, coff)
    section_count = _read_u16le(data, coff + 2)
    optional_size = _read_u16le(data, coff + 16)
    optional = coff + 20

    magic = _read_u16le(data, optional)
    if magic == _PE32:
        is_64bit = False
        rva_count_offset, directories = optional + 92, optional + 96
    elif magic == _PE32_PLUS:
        is_64bit = True
        rva_count_offset, directories = optional + 108, optional + 112
    else:
        raise MalformedArtifactError(f"Unknown optional header magic {magic:#x}")

    import_rva = 0
    if _read_u32le(data, rva_count_offset) > _IMPORT_DIRECTORY:
        import_rva = _read_u32le(data, directories + 8 * _IMPORT_DIRECTORY)

    table = optional + optional_size
    sections = tuple(
        _Section(
            virtual_size=_read_u32le(data, table + index * _SECTION_SIZE + 8),
            virtual_address=_read_u32le(data, table + index * _SECTION_SIZE + 12),
            raw_size=_read_u32le(data, table + index * _SECTION_SIZE + 16),
            raw_offset=_read_u32le(data, table + index * _SECTION_SIZE + 20),
        )
        for index in range(section_count)
    )
    return _Image(data=data, machine=machine, is_64bit=is_64bit, import_rva=import_rva, sections=sections)


def _symbols(image: _Image, thunk_rva: int) -> List[str]:
    offset = image.offset_of(thunk_rva)
    if offset is None:
        return []
    width = 8 if image.is_64bit else 4
    ordinal_flag = 1 << 63 if image.is_64bit else 1 << 31
    symbols: List[str] = []
    for _ in range(_MAX_THUNKS):
        entry = _read_u64le(image.data, offset) if image.is_64bit else _read_u32le(image.data, offset)
        if entry == 0:
            break
        if entry & ordinal_flag:
            symbols.append(str(entry & 0xFFFF))
        else:
            name_offset = image.offset_of(entry & 0x7FFFFFFF)
            if name_offset is not None:
                symbols.append(_read_c_string(image.data, name_offset + 2))
        offset += width
    return symbols


def parse_imports(data: bytes) -> Dict[str, Tuple[str, ...]]:
    """Return ``{dll name: imported symbols}`` in declaration order."""
    image = _load_image(data)
    imports: Dict[str, Tuple[str, ...]] = {}
    if image.import_rva == 0:
        return imports
    offset = image.offset_of(image.import_rva)
    if offset is None:
        raise MalformedArtifactError("Import directory lies outside every section")

    for index in range(_MAX_DESCRIPTORS):
        descriptor = offset + index * _DESCRIPTOR_SIZE
        original_thunk = _read_u32le(data, descriptor)
        name_rva = _read_u32le(data, descriptor + 12)
        first_thunk = _read_u32le(data, descriptor + 16)
        if original_thunk == 0 and name_rva == 0 and first_thunk == 0:
            break
        name_offset = image.offset_of(name_rva)
        if name_offset is None:
            continue
        name = _read_c_string(data, name_offset)
        logger.debug("Imported DLL: %s", name)
        imports[name] = tuple(_symbols(image, original_thunk or first_thunk))
    return imports


class PeParser(StructuredParser):
    """Extracts the import graph of Windows executables."""

    mime_types = ("application/vnd.microsoft.portable-executable",)

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        image = _load_image(data)
        imports = parse_imports(data)
        metadata = (
            MetadataEntry("Machine", _MACHINES.get(image.machine, f"{image.machine:#x}")),
            MetadataEntry("Sections", str(len(image.sections))),
            MetadataEntry("Imported Libraries", str(len(imports))),
        )
        return ParseResult(imports=imports, metadata=metadata)


__all__ = ["PeParser", "parse_imports"]
