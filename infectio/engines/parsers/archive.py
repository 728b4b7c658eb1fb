"""ZIP and OpenXML container parsers."""

from __future__ import annotations

import io
import zipfile
import zlib
from typing import List, NamedTuple, Optional, Tuple

from ...logging import get_logger
from ...models import Heuristic, ItemKind, MetadataEntry, ParseResult, Severity, StructuredItem
from .base import MalformedArtifactError, SecretRejectedError, StructuredParser

_ENCRYPTED_FLAG = 0x1
_MACRO_MARKERS = ("vbaProject.bin", "vbaProject", "vba")
DEFAULT_MAX_MEMBER_SIZE = 256 * 1024 * 1024

logger = get_logger("parsers.archive")


class ArchiveListing(NamedTuple):
    items: List[StructuredItem]
    encrypted_entries: int
    damaged_entries: int = 0
    oversized_entries: int = 0


class _Unreadable(Exception):
    """A member whose bytes could not be extracted."""


def _read_member(
    archive: zipfile.ZipFile, info: zipfile.ZipInfo, password: Optional[bytes], limit: int
) -> Optional[bytes]:
    """Return the member's bytes, or ``None`` when it inflates past ``limit``."""
    try:
        with archive.open(info, pwd=password) as handle:
            payload = handle.read(limit + 1)
    except (RuntimeError, zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError) as exc:
        raise _Unreadable(str(exc)) from exc
    if len(payload) > limit:
        return None
    return payload


def extract_members(
    data: bytes, secret: Optional[str] = None, *, max_member_size: int = DEFAULT_MAX_MEMBER_SIZE
) -> ArchiveListing:
    """Read every member of a ZIP archive.

    Encrypted members that cannot be decrypted are returned flagged
    ``encrypted`` with no bytes. Damaged members and members that inflate past
    ``max_member_size`` are listed without bytes. Raises
    :class:`MalformedArtifactError` when ``data`` is not a ZIP and
    :class:`SecretRejectedError` when ``secret`` unlocks none of the encrypted
    members.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError, EOFError) as exc:
        raise MalformedArtifactError(f"Failed to open ZIP archive: {exc}") from exc

    password = secret.encode("utf-8") if secret is not None else None
    items: List[StructuredItem] = []
    encrypted_entries = 0
    unlocked_entries = 0
    damaged_entries = 0
    oversized_entries = 0
    with archive:
        members = archive.infolist()
        logger.debug("Number of members in the archive: %d", len(members))
        for info in members:
            if info.is_dir():
                items.append(StructuredItem(path=info.filename, kind=ItemKind.DIRECTORY, size=0))
                continue
            encrypted = bool(info.flag_bits & _ENCRYPTED_FLAG)
            if encrypted:
                encrypted_entries += 1
            try:
                payload = _read_member(archive, info, password, max_member_size)
            except _Unreadable as exc:
                if encrypted:
                    logger.debug("Failed to decrypt member %s: %s", info.filename, exc)
                else:
                    damaged_entries += 1
                    logger.warning("Skipping damaged member %s: %s", info.filename, exc)
                items.append(
                    StructuredItem(
                        path=info.filename,
                        kind=ItemKind.FILE,
                        size=info.file_size,
                        encrypted=encrypted,
                    )
                )
                continue
            if encrypted:
                unlocked_entries += 1
            if payload is None:
                oversized_entries += 1
                logger.warning("Member %s exceeds %d bytes; not extracted", info.filename, max_member_size)
                items.append(StructuredItem(path=info.filename, kind=ItemKind.FILE, size=info.file_size))
                continue
            items.append(
                StructuredItem(path=info.filename, kind=ItemKind.FILE, size=len(payload), data=payload)
            )

    if secret is not None and encrypted_entries and not unlocked_entries:
        raise SecretRejectedError("Incorrect secret for encrypted archive")
    return ArchiveListing(
        items=items,
        encrypted_entries=encrypted_entries,
        damaged_entries=damaged_entries,
        oversized_entries=oversized_entries,
    )


def _archive_findings(listing: ArchiveListing, secret: Optional[str]) -> Tuple[Heuristic, ...]:
    findings: List[Heuristic] = []
    if any(item.encrypted for item in listing.items):
        findings.append(Heuristic("Encrypted files found in ZIP archive", Severity.MEDIUM))
    if secret is not None and listing.encrypted_entries:
        findings.append(Heuristic("Archive is encrypted", Severity.INFO))
    return tuple(findings)


def _summary(listing: ArchiveListing) -> Tuple[MetadataEntry, ...]:
    files = [item for item in listing.items if item.kind is ItemKind.FILE]
    entries = [
        MetadataEntry("Archive Members", str(len(files))),
        MetadataEntry("Uncompressed Size", str(sum(item.size for item in files))),
    ]
    if listing.damaged_entries:
        entries.append(MetadataEntry("Damaged Members", str(listing.damaged_entries)))
    if listing.oversized_entries:
        entries.append(MetadataEntry("Oversized Members", str(listing.oversized_entries)))
    return tuple(entries)


class ZipParser(StructuredParser):
    """Lists (and, given a secret, decrypts) the members of a ZIP archive."""

    mime_types = ("application/zip",)

    def __init__(self, max_member_size: int = DEFAULT_MAX_MEMBER_SIZE) -> None:
        self.max_member_size = max_member_size

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        listing = extract_members(data, secret, max_member_size=self.max_member_size)
        return ParseResult(
            items=tuple(listing.items),
            heuristics=_archive_findings(listing, secret),
            metadata=_summary(listing),
        )


class OpenXMLParser(ZipParser):
    """ZIP-based Office documents; additionally flags embedded VBA projects."""

    mime_types = (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    )

    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        result = super().parse(data, secret)
        has_macros = any(marker in item.path for item in result.items for marker in _MACRO_MARKERS)
        if not has_macros:
            return result
        return ParseResult(
            items=result.items,
            imports=result.imports,
            heuristics=result.heuristics + (Heuristic("Contain macros", Severity.HIGH),),
            metadata=result.metadata,
        )


__all__ = ["ArchiveListing", "DEFAULT_MAX_MEMBER_SIZE", "OpenXMLParser", "ZipParser", "extract_members"]
