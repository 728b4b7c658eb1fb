"""Structured-format parsers and the registry that routes mime types to them.

Third-party parsers join through the ``infectio.parsers`` entry-point group;
built-in parsers claim their mime types first.
"""

from __future__ import annotations

from importlib import metadata
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from ...logging import get_logger
from ...models import ParseResult
from .archive import OpenXMLParser, ZipParser
from .base import (
    MalformedArtifactError,
    ParseError,
    SecretRejectedError,
    StructuredParser,
    UnsupportedFormatError,
)
from .elf import ElfParser
from .macho import MachOParser
from .ole import OleParser
from .pdf import PdfParser
from .pe import PeParser

logger = get_logger("parsers")

_ENTRY_POINT_GROUP = "infectio.parsers"

_BUILTIN_PARSERS: Dict[str, Callable[[], StructuredParser]] = {
    "zip": ZipParser,
    "openxml": OpenXMLParser,
    "pdf": PdfParser,
    "pe": PeParser,
    "elf": ElfParser,
    "macho": MachOParser,
    "ole": OleParser,
}


class ParserRegistry:
    """Routes mime types to structured parsers.

    The first parser registered for a mime type owns it. Parsers that widen
    :meth:`StructuredParser.supports` beyond their declared mime types are
    consulted, in registration order, for types nobody declared.
    """

    def __init__(self) -> None:
        self._parsers: Dict[str, StructuredParser] = {}
        self._routes: Dict[str, StructuredParser] = {}

    @classmethod
    def of(cls, parsers: Iterable[StructuredParser]) -> "ParserRegistry":
        registry = cls()
        for parser in parsers:
            registry.register(type(parser).__name__.lower(), parser)
        return registry

    def register(self, name: str, parser: StructuredParser) -> None:
        if not isinstance(parser, StructuredParser):
            raise TypeError(f"Parser '{name}' is not a StructuredParser instance")
        self._parsers[name] = parser
        for mime_type in parser.mime_types:
            owner = self._routes.setdefault(mime_type, parser)
            if owner is not parser:
                logger.debug("%s stays with %s; ignoring %s", mime_type, type(owner).__name__, name)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._parsers)

    @property
    def mime_types(self) -> Tuple[str, ...]:
        return tuple(self._routes)

    def __contains__(self, name: object) -> bool:
        return name in self._parsers

    def __iter__(self) -> Iterator[StructuredParser]:
        return iter(self._parsers.values())

    def __len__(self) -> int:
        return len(self._parsers)

    def parser_for(self, mime_type: str) -> StructuredParser:
        parser = self._routes.get(mime_type)
        if parser is not None:
            return parser
        for candidate in self._parsers.values():
            if candidate.supports(mime_type):
                return candidate
        raise UnsupportedFormatError(mime_type)

    def parse(self, data: bytes, mime_type: str, secret: Optional[str] = None) -> ParseResult:
        return self.parser_for(mime_type).parse(data, secret)


def _load_plugin(entry: metadata.EntryPoint) -> StructuredParser:
    try:
        loaded = entry.load()
    except Exception as exc:  # pragma: no cover - third-party plugin failure
        raise RuntimeError(f"Failed to load parser entry point '{entry.name}': {exc}") from exc
    if isinstance(loaded, StructuredParser):
        return loaded
    if callable(loaded):
        instance = loaded()
        if isinstance(instance, StructuredParser):
            return instance
    raise TypeError(f"Parser entry point '{entry.name}' must provide a StructuredParser")


def discover_parsers(enabled: Sequence[str] | None = None) -> ParserRegistry:
    """Build the registry from the built-in parsers and installed plugins.

    ``enabled`` restricts the registry to the named parsers; naming a parser
    that does not exist raises :class:`ValueError`.
    """
    wanted = None if enabled is None else {name.lower() for name in enabled}
    sources: List[Tuple[str, Callable[[], StructuredParser]]] = list(_BUILTIN_PARSERS.items())
    for entry in _iter_entry_points():
        sources.append((entry.name, lambda entry=entry: _load_plugin(entry)))

    registry = ParserRegistry()
    for name, make in sources:
        key = name.lower()
        if key in registry or (wanted is not None and key not in wanted):
            continue
        registry.register(key, make())

    if wanted is not None:
        missing = wanted.difference(registry.names)
        if missing:
            raise ValueError(f"Unknown parsers requested: {', '.join(sorted(missing))}")
    logger.debug("Parsers ready for %d mime types", len(registry.mime_types))
    return registry


def parse_structured(
    data: bytes,
    mime_type: str,
    secret: Optional[str] = None,
    *,
    parsers: Union[ParserRegistry, Iterable[StructuredParser], None] = None,
) -> ParseResult:
    """Dispatch ``data`` to the parser registered for ``mime_type``.

    Raises :class:`UnsupportedFormatError` when none handles it; parser-specific
    :class:`ParseError` subclasses propagate unchanged.
    """
    if parsers is None:
        registry = discover_parsers()
    elif isinstance(parsers, ParserRegistry):
        registry = parsers
    else:
        registry = ParserRegistry.of(parsers)
    return registry.parse(data, mime_type, secret)


def _iter_entry_points() -> Iterable[metadata.EntryPoint]:
    return metadata.entry_points().select(group=_ENTRY_POINT_GROUP)


__all__ = [
    "ElfParser",
    "MachOParser",
    "MalformedArtifactError",
    "OleParser",
    "OpenXMLParser",
    "ParseError",
    "ParserRegistry",
    "PdfParser",
    "PeParser",
    "SecretRejectedError",
    "StructuredParser",
    "UnsupportedFormatError",
    "ZipParser",
    "discover_parsers",
    "parse_structured",
]
