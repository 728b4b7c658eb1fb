"""Mach-O parser: groups undefined external symbols by the dylib they bind to.

Universal (fat) binaries are handled slice by slice and their imports merged.
"""

from __future__ import annotations

import struct
from typing import Dict, List, Optional, Tuple

from ...logging import get_logger
from ...models import MetadataEntry, ParseResult
from .base import MalformedArtifactError, StructuredParser

logger = get_logger("parsers.macho")

_MH_MAGIC = 0xFEEDFACE
_MH_MAGIC_64 = 0xFEEDFACF
_FAT_MAGIC = 0xCAFEBABE
_FAT_MAGIC_64 = 0xCAFEBABF
_MAX_FAT_ARCHS = 32

_LC_SYMTAB = 0x2
_DYLIB_COMMANDS = frozenset({0xC, 0x20, 0x80000018, 0x8000001F, 0x80000023})

_N_STAB = 0xE0
_N_TYPE = 0x0E
_N_UNDF = 0x0
_N_EXT = 0x01

# Symbols resolved by dynamic lookup rather than a specific library ordinal.
FLAT_NAMESPACE = "(flat namespace)"

_CPU_TYPES = {
    7: "i386",
    0x01000007: "x86_64",
    12: "arm",
    0x0100000C: "arm64",
    18: "ppc",
    0x01000012: "ppc64",
}

Imports = Dict[str, List[str]]


def dylib_name(path: str) -> str:
    """``/usr/lib/libSystem.B.dylib`` -> ``libSystem``."""
    return path.rsplit("/", 1)[-1].split(".", 1)[0]


def _unpack(fmt: str, data: bytes, offset: int) -> Tuple[int, ...]:
    if offset < 0 or offset + struct.calcsize(fmt) > len(data):
        raise MalformedArtifactError(f"Read past end of image at {offset:#x}")
    return struct.unpack_from(fmt, data, offset)


def _c_string(data: bytes, start: int, end: int) -> str:
    raw = data[start:end]
    nul = raw.find(b"\x00")
    if nul >= 0:
        raw = raw[:nul]
    return raw.decode("utf-8", errors="replace")


def _byte_order(data: bytes) -> Tuple[str, bool]:
    if len(data) < 4:
        raise MalformedArtifactError("Truncated Mach-O header")
    for endian in ("<", ">"):
        (magic,) = struct.unpack_from(endian + "I", data, 0)
        if magic in (_MH_MAGIC, _MH_MAGIC_64):
            return endian, magic == _MH_MAGIC_64
    raise MalformedArtifactError("Missing Mach-O magic")


def _slice_imports(data: bytes) -> Tuple[int, Imports]:
    """Return the CPU type and imports of a single-architecture image."""
    endian, is_64bit = _byte_order(data)
    _magic, cputype, _subtype, _filetype, ncmds, _sizeofcmds, _flags = _unpack(endian + "IiiIIII", data, 0)

    dylibs: List[str] = []
    symtab: Optional[Tuple[int, ...]] = None
    offset = 32 if is_64bit else 28
    for _ in range(ncmds):
        cmd, cmdsize = _unpack(endian + "II", data, offset)
        if cmdsize < 8:
            raise MalformedArtifactError(f"Load command at {offset:#x} has size {cmdsize}")
        if cmd in _DYLIB_COMMANDS:
            (name_offset,) = _unpack(endian + "I", data, offset + 8)
            dylibs.append(dylib_name(_c_string(data, offset + name_offset, offset + cmdsize)))
        elif cmd == _LC_SYMTAB:
            symtab = _unpack(endian + "IIII", data, offset + 8)
        offset += cmdsize

    imports: Imports = {name: [] for name in dylibs}
    if symtab is None:
        return cputype, imports

    symoff, nsyms, stroff, strsize = symtab
    strings_end = min(stroff + strsize, len(data))
    entry_format, entry_size = (endian + "IBBHQ", 16) if is_64bit else (endian + "IBBHI", 12)
    for index in range(nsyms):
        strx, n_type, _sect, n_desc, _value = _unpack(entry_format, data, symoff + index * entry_size)
        if n_type & _N_STAB or (n_type & _N_TYPE) != _N_UNDF or not n_type & _N_EXT:
            continue
        ordinal = (n_desc >> 8) & 0xFF
        library = dylibs[ordinal - 1] if 1 <= ordinal <= len(dylibs) else FLAT_NAMESPACE
        imports.setdefault(library, []).append(_c_string(data, stroff + strx, strings_end))
    return cputype, imports


def _fat_slices(data: bytes) -> List[bytes]:
    magic, count = _unpack(">II", data, 0)
    if count > _MAX_FAT_ARCHS:
        raise MalformedArtifactError(f"Universal binary declares {count} architectures")
    entry_format, entry_size = (">iiQQII", 32) if magic == _FAT_MAGIC_64 else (">iiIII", 20)
    slices: List[bytes] = []
    for index in range(count):
        fields = _unpack(entry_format, data, 8 + index * entry_size)
        start, size = fields[2], fields[3]
        if start + size > len(data):
            raise MalformedArtifactError(f"Architecture {index} lies outside the file")
        slices.append(data[start : start + size])
    return slices


def _merge(target: Imports, source: Imports) -> None:
    for library, symbols in source.items():
        known = target.setdefault(library, [])
        known.extend(symbol for symbol in symbols if symbol not in known)


def parse_imports(data: bytes) -> Tuple[List[str], Dict[str, Tuple[str, ...]]]:
    """Return the architectures found and ``{dylib: imported symbols}``."""
    if len(data) >= 4 and struct.unpack_from(">I", data, 0)[0] in (_FAT_MAGIC, _FAT_MAGIC_64):
        architectures: List[str] = []
        merged: Imports = {}
        for index, image in enumerate(_fat_slices(data)):
            try:
                cputype, imports = _slice_imports(image)
            except MalformedArtifactError as exc:
                logger.warning("Skipping architecture %d: %s", index, exc)
                continue
            architectures.append(_CPU_TYPES.get(cputype, f"cpu_{cputype:#x}"))
            _merge(merged, imports)
        if not architectures:
            raise MalformedArtifactError("Universal binary holds no readable Mach-O image")
    else:
        cputype, merged = _slice_imports(data)
        architectures = [_CPU_TYPES.get(cputype, f"cpu_{cputype:#x}")]
    return architectures, {library: tuple(symbols) for library, symbols in merged.items()}


class MachOParser(StructuredParser):
    """Extracts the import graph of macOS executables and dylibs."""

    mime_types = ("application/x-mach-binary",)

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        architectures, imports = parse_imports(data)
        libraries = [name for name in imports if name != FLAT_NAMESPACE]
        metadata = (
            MetadataEntry("Architectures", ", ".join(architectures)),
            MetadataEntry("Linked Libraries", str(len(libraries))),
        )
        return ParseResult(imports=imports, metadata=metadata)


__all__ = ["FLAT_NAMESPACE", "MachOParser", "dylib_name", "parse_imports"]
