"""Signature-based content-type classifier.

The classifier answers with an opaque label; :func:`content_type_for` turns a
label into the :class:`~infectio.models.ContentTypeInfo` shown in reports.
"""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..models import ContentTypeInfo

_TEXT_SAMPLE = 4096
_TEXT_THRESHOLD = 0.95

CONTENT_TYPES: Dict[str, ContentTypeInfo] = {
    "pe": ContentTypeInfo(
        "application/vnd.microsoft.portable-executable",
        "executable",
        "PE executable",
        ("exe", "dll", "sys"),
    ),
    "elf": ContentTypeInfo("application/x-executable", "executable", "ELF executable", ("elf", "so")),
    "macho": ContentTypeInfo("application/x-mach-binary", "executable", "Mach-O executable", ("dylib",)),
    "pdf": ContentTypeInfo("application/pdf", "document", "PDF document", ("pdf",)),
    "zip": ContentTypeInfo("application/zip", "archive", "Zip archive data", ("zip",)),
    "docx": ContentTypeInfo(
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "document",
        "Microsoft Word 2007+ document",
        ("docx", "docm"),
    ),
    "xlsx": ContentTypeInfo(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "document",
        "Microsoft Excel 2007+ document",
        ("xlsx", "xlsm"),
    ),
    "pptx": ContentTypeInfo(
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "document",
        "Microsoft PowerPoint 2007+ document",
        ("pptx", "pptm"),
    ),
    "ole": ContentTypeInfo(
        "application/x-ole-storage", "document", "Microsoft OLE2 compound document", ("doc", "xls", "ppt")
    ),
    "gzip": ContentTypeInfo("application/gzip", "archive", "gzip compressed data", ("gz",)),
    "png": ContentTypeInfo("image/png", "image", "PNG image data", ("png",)),
    "jpeg": ContentTypeInfo("image/jpeg", "image", "JPEG image data", ("jpg", "jpeg")),
    "gif": ContentTypeInfo("image/gif", "image", "GIF image data", ("gif",)),
    "txt": ContentTypeInfo("text/plain", "text", "Generic text document", ("txt",), True),
    "empty": ContentTypeInfo("inode/x-empty", "inode", "Empty file", (), False),
    "unknown": ContentTypeInfo("application/octet-stream", "unknown", "Unknown binary data", (), False),
}

_MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce",
    b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",
)

_OPENXML_ROOTS: Tuple[Tuple[str, str], ...] = (
    ("word/", "docx"),
    ("xl/", "xlsx"),
    ("ppt/", "pptx"),
)


@dataclass(frozen=True)
class Classification:
    label: str

    @property
    def content_type(self) -> ContentTypeInfo:
        return content_type_for(self.label)


def content_type_for(label: str) -> ContentTypeInfo:
    """Return the report-facing description of ``label`` (unknown labels map to ``unknown``)."""
    return CONTENT_TYPES.get(label, CONTENT_TYPES["unknown"])


def _zip_label(data: bytes) -> str:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
    except (zipfile.BadZipFile, ValueError, EOFError):
        return "zip"
    if "[Content_Types].xml" not in names:
        return "zip"
    for prefix, label in _OPENXML_ROOTS:
        if any(name.startswith(prefix) for name in names):
            return label
    return "zip"


def _looks_like_text(data: bytes) -> bool:
    sample = data[:_TEXT_SAMPLE]
    try:
        decoded = sample.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte sequence may be split at the sample boundary.
        truncated = len(sample) < len(data) and exc.start >= len(sample) - 3
        if not truncated:
            return False
        decoded = sample[: exc.start].decode("utf-8")
    if not decoded:
        return False
    printable = sum(1 for char in decoded if char.isprintable() or char in "\r\n\t\f")
    return printable / len(decoded) >= _TEXT_THRESHOLD


class SignatureClassifier:
    """Classifies artifacts from magic bytes; must be loaded before use."""

    def __init__(self) -> None:
        self._rules: Optional[List[Tuple[Callable[[bytes], bool], Callable[[bytes], str]]]] = None

    @property
    def loaded(self) -> bool:
        return self._rules is not None

    def load(self) -> None:
        """Build the signature table. Idempotent."""
        if self._rules is not None:
            return

        def _constant(label: str) -> Callable[[bytes], str]:
            return lambda _data: label

        self._rules = [
            (lambda data: data.startswith(b"MZ"), _constant("pe")),
            (lambda data: data.startswith(b"\x7fELF"), _constant("elf")),
            (lambda data: data[:4] in _MACHO_MAGICS, _constant("macho")),
            (lambda data: data.startswith(b"%PDF-"), _constant("pdf")),
            (lambda data: data[:4] in (b"PK\x03\x04", b"PK\x05\x06"), _zip_label),
            (lambda data: data.startswith(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"), _constant("ole")),
            (lambda data: data.startswith(b"\x1f\x8b"), _constant("gzip")),
            (lambda data: data.startswith(b"\x89PNG\r\n\x1a\n"), _constant("png")),
            (lambda data: data.startswith(b"\xff\xd8\xff"), _constant("jpeg")),
            (lambda data: data[:6] in (b"GIF87a", b"GIF89a"), _constant("gif")),
            (_looks_like_text, _constant("txt")),
        ]

    def classify(self, data: bytes) -> Classification:
        if self._rules is None:
            raise RuntimeError("Classifier used before load()")
        if not data:
            return Classification("empty")
        for matches, label_for in self._rules:
            if matches(data):
                return Classification(label_for(data))
        return Classification("unknown")


__all__ = ["CONTENT_TYPES", "Classification", "SignatureClassifier", "content_type_for"]
