"""Printable-string extraction and the indicators derived from it."""

from __future__ import annotations

import re
from typing import Iterable, List, Tuple

DEFAULT_MIN_LENGTH = 5

_PRINTABLE = rb"[\x20-\x7e\t]"
_IPV4 = re.compile(
    r"(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
)
_URL = re.compile(r"https?://[^\s]+")
_URL_DOMAIN = re.compile(r"^(?:(?:https?://)?(?:www\.)?([a-zA-Z0-9-]+\.[a-zA-Z]{2,6}))")


def _ascii_pattern(min_length: int) -> re.Pattern[bytes]:
    return re.compile(_PRINTABLE + b"{%d,}" % min_length)


def _utf16_pattern(min_length: int) -> re.Pattern[bytes]:
    return re.compile(b"(?:" + _PRINTABLE + b"\x00){%d,}" % min_length)


def extract_strings(data: bytes, min_length: int = DEFAULT_MIN_LENGTH) -> List[str]:
    """Return ASCII and UTF-16LE runs of at least ``min_length`` characters.

    Results are ordered by their offset in ``data``.
    """
    if min_length <= 0:
        raise ValueError("min_length must be positive")
    found: List[Tuple[int, str]] = []
    for match in _ascii_pattern(min_length).finditer(data):
        found.append((match.start(), match.group().decode("ascii")))
    for match in _utf16_pattern(min_length).finditer(data):
        found.append((match.start(), match.group().decode("utf-16-le")))
    found.sort(key=lambda entry: entry[0])
    return [text for _, text in found]


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def extract_ips(strings: Iterable[str]) -> List[str]:
    """Return unique IPv4 addresses found in ``strings`` in first-seen order."""
    return _unique(match.group(0) for text in strings for match in _IPV4.finditer(text))


def extract_urls(strings: Iterable[str]) -> List[str]:
    """Return unique http(s) URLs that carry a plausible domain."""
    candidates = (match.group(0) for text in strings for match in _URL.finditer(text))
    return _unique(url for url in candidates if _URL_DOMAIN.match(url))


__all__ = ["DEFAULT_MIN_LENGTH", "extract_ips", "extract_strings", "extract_urls"]
