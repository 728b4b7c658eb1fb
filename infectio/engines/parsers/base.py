"""Base classes and errors for structured-format parser plugins."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, Optional, Tuple

from ...models import ParseResult


class ParseError(Exception):
    """Raised when a structured parse cannot produce a result."""

    needs_secret: ClassVar[bool] = False


class UnsupportedFormatError(ParseError):
    """No parser is registered for the artifact's mime type."""

    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported file type: {mime_type}")
        self.mime_type = mime_type


class MalformedArtifactError(ParseError):
    """The artifact claims a supported format but cannot be decoded."""


class SecretRejectedError(ParseError):
    """A decryption secret was supplied but did not unlock the content."""

    needs_secret = True


class StructuredParser(ABC):
    """Contract for parsers that expose an artifact's internal structure."""

    mime_types: ClassVar[Tuple[str, ...]] = ()

    def supports(self, mime_type: str) -> bool:
        """Return True when this parser handles ``mime_type``."""
        return mime_type in self.mime_types

    @abstractmethod
    def parse(self, data: bytes, secret: Optional[str] = None) -> ParseResult:
        """Return members, imports and findings for ``data``."""
