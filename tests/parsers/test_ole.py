"""OLE2 compound document parser tests."""

from __future__ import annotations

import struct

import pytest

from infectio.engines.parsers import MalformedArtifactError, OleParser
from infectio.models import ItemKind, Severity
from tests._fixtures.builders import build_ole


def _word_stream(encrypted: bool = False) -> bytes:
    flags = 0x0100 if encrypted else 0
    return struct.pack("<HHHHHH", 0xA5EC, 0xC1, 0, 0x409, 0, flags).ljust(4096, b"\x00")


def _findings(result) -> list[tuple[str, Severity]]:
    return [(finding.name, finding.severity) for finding in result.heuristics]


def test_word_document_with_macros_and_objects() -> None:
    data = build_ole(
        {
            "WordDocument": _word_stream(),
            "\x01CompObj": b"compobj data",
            "Macros/VBA/dir": b"attribute",
            "Macros/PROJECT": b"ID=",
            "ObjectPool/_1234/\x01Ole": b"ole",
        }
    )

    result = OleParser().parse(data)

    assert _findings(result) == [
        ("OLE file type: Word", Severity.INFO),
        ("Contains a VBA project, likely to contain macros", Severity.HIGH),
        ("List of objects in the file, may contain embedded objects", Severity.MEDIUM),
    ]
    by_path = {item.path: item for item in result.items}
    assert len(by_path["WordDocument"].data or b"") == 4096
    assert by_path["CompObj"].data == b"compobj data"
    assert by_path["Macros/VBA/dir"].data == b"attribute"
    assert by_path["ObjectPool/_1234/Ole"].data == b"ole"
    assert by_path["Macros"].kind is ItemKind.DIRECTORY
    assert by_path["Macros/VBA"].kind is ItemKind.DIRECTORY
    assert [(entry.title, entry.value) for entry in result.metadata] == [
        ("OLE Streams", "5"),
        ("OLE Storages", "4"),
    ]


def test_word_encryption_flag_is_reported() -> None:
    result = OleParser().parse(build_ole({"WordDocument": _word_stream(encrypted=True)}))

    assert _findings(result) == [
        ("OLE file type: Word", Severity.INFO),
        ("OLE file is encrypted", Severity.LOW),
    ]


def test_workbook_filepass_record_is_reported() -> None:
    workbook = struct.pack("<HH", 0x0809, 16) + bytes(16) + struct.pack("<HH", 0x002F, 6) + bytes(6)

    result = OleParser().parse(build_ole({"Workbook": workbook}))

    assert _findings(result) == [
        ("OLE file type: Excel", Severity.INFO),
        ("OLE file is encrypted", Severity.LOW),
    ]


def test_encrypted_package_streams_are_flagged() -> None:
    result = OleParser().parse(build_ole({"EncryptionInfo": b"\x04\x00" * 8, "EncryptedPackage": b"\xff" * 64}))

    assert ("Contains an encrypted stream", Severity.HIGH) in _findings(result)
    assert _findings(result)[0] == ("OLE file type: Generic", Severity.INFO)


def test_missing_signature_is_malformed() -> None:
    with pytest.raises(MalformedArtifactError):
        OleParser().parse(b"\xd0\xcf\x11\xe0 truncated")
