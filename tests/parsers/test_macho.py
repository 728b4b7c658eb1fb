"""Mach-O import parser tests."""

from __future__ import annotations

import pytest

from infectio.engines.parsers import MachOParser, MalformedArtifactError
from infectio.engines.parsers.macho import FLAT_NAMESPACE, dylib_name, parse_imports
from tests._fixtures.builders import build_fat, build_macho

_X86_64 = 0x01000007
_ARM64 = 0x0100000C


def test_dylib_name_drops_directory_and_version() -> None:
    assert dylib_name("/usr/lib/libSystem.B.dylib") == "libSystem"
    assert dylib_name("/System/Library/Frameworks/Security.framework/Versions/A/Security") == "Security"


def test_symbols_bind_by_library_ordinal() -> None:
    data = build_macho(
        {
            "/usr/lib/libSystem.B.dylib": ["_printf", "_malloc"],
            "/System/Library/Frameworks/Security.framework/Versions/A/Security": ["_SecKeychainOpen"],
        },
        flat=["_hook"],
    )

    architectures, imports = parse_imports(data)

    assert architectures == ["x86_64"]
    assert imports == {
        "libSystem": ("_printf", "_malloc"),
        "Security": ("_SecKeychainOpen",),
        FLAT_NAMESPACE: ("_hook",),
    }


def test_universal_binary_merges_slices() -> None:
    data = build_fat(
        [
            (_X86_64, build_macho({"/usr/lib/libSystem.B.dylib": ["_printf"]})),
            (_ARM64, build_macho({"/usr/lib/libSystem.B.dylib": ["_printf", "_puts"]}, cputype=_ARM64)),
        ]
    )

    result = MachOParser().parse(data)

    assert dict(result.imports) == {"libSystem": ("_printf", "_puts")}
    assert [(entry.title, entry.value) for entry in result.metadata] == [
        ("Architectures", "x86_64, arm64"),
        ("Linked Libraries", "1"),
    ]


def test_unreadable_slice_is_skipped() -> None:
    data = build_fat([(_X86_64, build_macho({"/usr/lib/libz.1.dylib": ["_inflate"]})), (12, bytes(64))])

    architectures, imports = parse_imports(data)

    assert architectures == ["x86_64"]
    assert imports == {"libz": ("_inflate",)}


def test_missing_magic_is_malformed() -> None:
    with pytest.raises(MalformedArtifactError):
        MachOParser().parse(b"not a mach-o image")
