"""Facade over the analysis primitives that task runners call."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from ..models import ContentTypeInfo, ParseResult
from . import entropy as _entropy
from . import hashes as _hashes
from . import strings as _strings
from .classifier import SignatureClassifier
from .parsers import ParserRegistry, StructuredParser, discover_parsers


class AnalysisEngines:
    """Bundles the classifier, byte-level primitives and structured parsers.

    :meth:`initialize` performs the one-off loading work (classifier table,
    parser discovery) and is driven by :class:`infectio.gateway.EngineGateway`;
    every other method assumes it has completed.
    """

    def __init__(
        self,
        classifier: SignatureClassifier | None = None,
        parsers: Optional[Sequence[StructuredParser]] = None,
        enabled_parsers: Optional[Sequence[str]] = None,
    ) -> None:
        self.classifier = classifier or SignatureClassifier()
        self._registry: Optional[ParserRegistry] = ParserRegistry.of(parsers) if parsers is not None else None
        self._enabled_parsers = enabled_parsers

    def initialize(self) -> None:
        self.classifier.load()
        if self._registry is None:
            self._registry = discover_parsers(self._enabled_parsers)

    def classify(self, data: bytes) -> ContentTypeInfo:
        return self.classifier.classify(data).content_type

    def entropy(self, data: bytes) -> float:
        return _entropy.calculate_entropy(data)

    def entropy_by_chunks(self, data: bytes, chunk_size: int = _entropy.DEFAULT_CHUNK_SIZE) -> List[float]:
        return [chunk.entropy for chunk in _entropy.calculate_entropy_by_chunks(data, chunk_size)]

    def digest(self, title: str, data: bytes) -> str:
        return _hashes.digest(title, data)

    def extract_strings(self, data: bytes, min_length: int = _strings.DEFAULT_MIN_LENGTH) -> List[str]:
        return _strings.extract_strings(data, min_length)

    def extract_ips(self, strings: Iterable[str]) -> List[str]:
        return _strings.extract_ips(strings)

    def extract_urls(self, strings: Iterable[str]) -> List[str]:
        return _strings.extract_urls(strings)

    def parse_structured(self, data: bytes, mime_type: str, secret: Optional[str] = None) -> ParseResult:
        if self._registry is None:
            raise RuntimeError("Parsers used before initialize()")
        return self._registry.parse(data, mime_type, secret)


__all__ = ["AnalysisEngines"]
