"""Lightweight PDF parser that surfaces scripts and embedded files."""

from __future__ import annotations

import re
import zlib
from typing import Dict, List, Optional

from ...logging import get_logger
from ...models import Heuristic, ItemKind, MetadataEntry, ParseResult, Severity, StructuredItem
from .base import MalformedArtifactError, StructuredParser

logger = get_logger("parsers.pdf")

DEFAULT_MAX_EMBEDDED_SIZE = 256 * 1024 * 1024

_HEADER = re.compile(rb"%PDF-(\d+\.\d+)")
_OBJECT = re.compile(rb"(\d+)\s+(\d+)\s+obj\b(.*?)\bendobj", re.DOTALL)
_JAVASCRIPT_ACTION = re.compile(rb"/S\s*/JavaScript")
_JS_OPEN = re.compile(rb"/JS\s*\(")
_EMBEDDED_FILE = re.compile(rb"/Type\s*/EmbeddedFile\b")
_FILESPEC = re.compile(rb"/F\s*\(((?:\\.|[^\\)])*)\)\s*/EF\s*<<\s*/F\s+(\d+)\s+\d+\s+R", re.DOTALL)
_STREAM = re.compile(rb"stream\r?\n(.*?)\r?\nendstream", re.DOTALL)
_ESCAPES = {b"n": b"\n", b"r": b"\r", b"t": b"\t", b"b": b"\b", b"f": b"\f"}


def _unescape(literal: bytes) -> bytes:
    def _replace(match: re.Match[bytes]) -> bytes:
        return _ESCAPES.get(match.group(1), match.group(1))

    return re.sub(rb"\\(.)", _replace, literal, flags=re.DOTALL)


def _read_literal(buffer: bytes, start: int) -> Optional[bytes]:
    """Return the literal string opened just before ``start``, honouring nested parentheses."""
    depth = 1
    index = start
    while index < len(buffer):
        char = buffer[index : index + 1]
        if char == b"\\":
            index += 2
            continue
        if char == b"(":
            depth += 1
        elif char == b")":
            depth -= 1
            if depth == 0:
                return buffer[start:index]
        index += 1
    return None


def _stream_payload(body: bytes, limit: int) -> Optional[bytes]:
    match = _STREAM.search(body)
    if match is None:
        return None
    raw = match.group(1)
    if b"/FlateDecode" not in body.split(b"stream", 1)[0]:
        return raw
    try:
        payload = zlib.decompressobj().decompress(raw, limit + 1)
    except zlib.error as exc:
        logger.debug("Failed to inflate embedded stream: %s", exc)
        return None
    if len(payload) > limit:
        logger.warning("Embedded stream inflates past %d bytes; not extracted", limit)
        return None
    return payload


class PdfParser(StructuredParser):
    """Flags JavaScript actions and embedded files; extracts both as members."""

    mime_types = ("application/pdf",)

    def __init__(self, max_embedded_size: int = DEFAULT_MAX_EMBEDDED_SIZE) -> None:
        self.max_embedded_size = max_embedded_size

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        header = _HEADER.search(data[:1024])
        if header is None:
            raise MalformedArtifactError("Missing %PDF header")

        objects: Dict[int, bytes] = {
            int(match.group(1)): match.group(3) for match in _OBJECT.finditer(data)
        }
        items: List[StructuredItem] = []
        heuristics: List[Heuristic] = []

        for number, body in objects.items():
            if not _JAVASCRIPT_ACTION.search(body):
                continue
            opener = _JS_OPEN.search(body)
            literal = _read_literal(body, opener.end()) if opener else None
            if literal is None:
                continue
            script = _unescape(literal)
            items.append(
                StructuredItem(
                    path=f"extracted/{number}.js",
                    kind=ItemKind.FILE,
                    size=len(script),
                    data=script,
                )
            )
        if items:
            heuristics.append(Heuristic("Contains JavaScript", Severity.HIGH))

        names: Dict[int, str] = {}
        for spec in _FILESPEC.finditer(data):
            names[int(spec.group(2))] = _unescape(spec.group(1)).decode("latin-1")

        embedded = 0
        for number, body in objects.items():
            if not _EMBEDDED_FILE.search(body):
                continue
            payload = _stream_payload(body, self.max_embedded_size)
            if payload is None:
                continue
            embedded += 1
            logger.info("Embedded file: %s", names.get(number, number))
            items.append(
                StructuredItem(
                    path=names.get(number, f"embedded/{number}.bin"),
                    kind=ItemKind.FILE,
                    size=len(payload),
                    data=payload,
                )
            )
        if embedded:
            heuristics.append(Heuristic("Contains embedded file", Severity.HIGH))

        metadata = (
            MetadataEntry("PDF Version", header.group(1).decode("ascii")),
            MetadataEntry("PDF Objects", str(len(objects))),
        )
        return ParseResult(items=tuple(items), heuristics=tuple(heuristics), metadata=metadata)


__all__ = ["PdfParser"]
