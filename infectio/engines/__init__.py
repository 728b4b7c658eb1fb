"""Analysis primitives consumed by the task runner."""

from __future__ import annotations

from .classifier import CONTENT_TYPES, Classification, SignatureClassifier, content_type_for
from .hashes import DIGESTS
from .primitives import AnalysisEngines

__all__ = [
    "AnalysisEngines",
    "CONTENT_TYPES",
    "Classification",
    "DIGESTS",
    "SignatureClassifier",
    "content_type_for",
]
