"""ELF parser: maps undefined dynamic symbols onto the shared objects that provide them."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ...logging import get_logger
from ...models import MetadataEntry, ParseResult
from .base import MalformedArtifactError, StructuredParser

logger = get_logger("parsers.elf")

_ELF_MAGIC = b"\x7fELF"
_SHT_DYNAMIC = 6
_SHT_DYNSYM = 11
_SHT_GNU_VERNEED = 0x6FFFFFFE
_SHT_GNU_VERSYM = 0x6FFFFFFF
_DT_NULL = 0
_DT_NEEDED = 1
_SHN_UNDEF = 0
_VERSION_MASK = 0x7FFF
_MAX_VERNEED = 4096

# Undefined symbols that carry no version requirement cannot be tied to a library.
UNVERSIONED = "(unversioned)"

_ELF_MACHINES = {
    0x03: "x86",
    0x08: "mips",
    0x14: "powerpc",
    0x28: "arm",
    0x3E: "x86_64",
    0xB7: "aarch64",
    0xF3: "riscv",
}


@dataclass(frozen=True)
class _Section:
    type: int
    offset: int
    size: int
    link: int
    info: int
    entsize: int


@dataclass(frozen=True)
class _ElfImage:
    data: bytes
    is_64bit: bool
    endian: str
    machine: int
    sections: Tuple[_Section, ...]

    def unpack(self, fmt: str, offset: int) -> Tuple[int, ...]:
        layout = self.endian + fmt
        if offset < 0 or offset + struct.calcsize(layout) > len(self.data):
            raise MalformedArtifactError(f"Read past end of image at {offset:#x}")
        return struct.unpack_from(layout, self.data, offset)

    def first(self, section_type: int) -> Optional[_Section]:
        for section in self.sections:
            if section.type == section_type:
                return section
        return None

    def linked(self, section: _Section) -> bytes:
        if section.link >= len(self.sections):
            raise MalformedArtifactError(f"Section link {section.link} out of range")
        return self.contents(self.sections[section.link])

    def contents(self, section: _Section) -> bytes:
        end = section.offset + section.size
        if end > len(self.data):
            raise MalformedArtifactError(f"Section at {section.offset:#x} runs past end of image")
        return self.data[section.offset : end]


def _string_at(table: bytes, offset: int) -> str:
    if offset >= len(table):
        return ""
    end = table.find(b"\x00", offset)
    raw = table[offset:] if end < 0 else table[offset:end]
    return raw.decode("utf-8", errors="replace")


def _load_image(data: bytes) -> _ElfImage:
    if len(data) < 16 or not data.startswith(_ELF_MAGIC):
        raise MalformedArtifactError("Missing ELF header")
    if data[4] not in (1, 2):
        raise MalformedArtifactError(f"Unknown ELF class {data[4]}")
    if data[5] not in (1, 2):
        raise MalformedArtifactError(f"Unknown ELF data encoding {data[5]}")
    is_64bit = data[4] == 2
    endian = "<" if data[5] == 1 else ">"

    header = _ElfImage(data, is_64bit, endian, 0, ())
    if is_64bit:
        fields = header.unpack("HHIQQQIHHHHHH", 16)
        section_format = "IIQQQQIIQQ"
    else:
        fields = header.unpack("HHIIIIIHHHHHH", 16)
        section_format = "IIIIIIIIII"
    machine, shoff, shentsize, shnum = fields[1], fields[5], fields[10], fields[11]

    sections: List[_Section] = []
    if shoff:
        for index in range(shnum):
            values = header.unpack(section_format, shoff + index * shentsize)
            sections.append(
                _Section(
                    type=values[1],
                    offset=values[4],
                    size=values[5],
                    link=values[6],
                    info=values[7],
                    entsize=values[9],
                )
            )
    return _ElfImage(data, is_64bit, endian, machine, tuple(sections))


def _needed_libraries(image: _ElfImage) -> List[str]:
    dynamic = image.first(_SHT_DYNAMIC)
    if dynamic is None:
        return []
    strings = image.linked(dynamic)
    entry_format, entry_size = ("qQ", 16) if image.is_64bit else ("iI", 8)
    needed: List[str] = []
    for offset in range(dynamic.offset, dynamic.offset + dynamic.size, entry_size):
        tag, value = image.unpack(entry_format, offset)
        if tag == _DT_NULL:
            break
        if tag == _DT_NEEDED:
            needed.append(_string_at(strings, value))
    return needed


def _version_owners(image: _ElfImage) -> Dict[int, str]:
    """Map GNU version indices onto the file names of the libraries that define them."""
    verneed = image.first(_SHT_GNU_VERNEED)
    if verneed is None:
        return {}
    strings = image.linked(verneed)
    owners: Dict[int, str] = {}
    offset = verneed.offset
    end = verneed.offset + verneed.size
    for _ in range(min(verneed.info or _MAX_VERNEED, _MAX_VERNEED)):
        if offset + 16 > end:
            break
        _version, count, file_name, aux, next_entry = image.unpack("HHIII", offset)
        library = _string_at(strings, file_name)
        aux_offset = offset + aux
        for _ in range(count):
            _hash, _flags, other, _name, next_aux = image.unpack("IHHII", aux_offset)
            owners[other & _VERSION_MASK] = library
            if not next_aux:
                break
            aux_offset += next_aux
        if not next_entry:
            break
        offset += next_entry
    return owners


def _undefined_symbols(image: _ElfImage) -> List[Tuple[int, str]]:
    """Return ``(symbol index, name)`` for every undefined dynamic symbol."""
    dynsym = image.first(_SHT_DYNSYM)
    if dynsym is None:
        return []
    strings = image.linked(dynsym)
    default_size = 24 if image.is_64bit else 16
    entry_size = dynsym.entsize or default_size
    symbols: List[Tuple[int, str]] = []
    for index in range(1, dynsym.size // entry_size):
        offset = dynsym.offset + index * entry_size
        if image.is_64bit:
            name, _info, _other, shndx, _value, _size = image.unpack("IBBHQQ", offset)
        else:
            name, _value, _size, _info, _other, shndx = image.unpack("IIIBBH", offset)
        if shndx == _SHN_UNDEF and name:
            symbols.append((index, _string_at(strings, name)))
    return symbols


def parse_imports(data: bytes) -> Dict[str, Tuple[str, ...]]:
    """Return ``{shared object: imported symbols}``; needed libraries come first, in link order."""
    image = _load_image(data)
    imports: Dict[str, List[str]] = {name: [] for name in _needed_libraries(image)}
    owners = _version_owners(image)

    versym = image.first(_SHT_GNU_VERSYM)
    versions = image.contents(versym) if versym is not None else b""
    for index, name in _undefined_symbols(image):
        library = UNVERSIONED
        if len(versions) >= 2 * (index + 1):
            (version,) = struct.unpack_from(image.endian + "H", versions, 2 * index)
            library = owners.get(version & _VERSION_MASK, UNVERSIONED)
        imports.setdefault(library, []).append(name)

    logger.debug("Resolved imports for %d shared objects", len(imports))
    return {library: tuple(symbols) for library, symbols in imports.items()}


class ElfParser(StructuredParser):
    """Extracts the import graph of ELF executables and shared objects."""

    mime_types = ("application/x-executable", "application/x-sharedlib")

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        image = _load_image(data)
        imports = parse_imports(data)
        libraries = [name for name in imports if name != UNVERSIONED]
        metadata = (
            MetadataEntry("Machine", _ELF_MACHINES.get(image.machine, f"machine_{image.machine}")),
            MetadataEntry("Class", "ELF64" if image.is_64bit else "ELF32"),
            MetadataEntry("Shared Libraries", str(len(libraries))),
        )
        return ParseResult(imports=imports, metadata=metadata)


__all__ = ["ElfParser", "UNVERSIONED", "parse_imports"]
