"""Core data models shared across infectio components."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class TaskKind(str, Enum):
    """Event categories emitted by a task runner."""

    CONTENT_TYPE = "content_type"
    ENTROPY = "entropy"
    ENTROPY_CHUNKS = "entropy_chunks"
    STRINGS = "strings"
    IPS = "ips"
    URLS = "urls"
    STRUCTURED_REPORT = "structured_report"
    METADATA = "metadata"
    HEURISTIC = "heuristic"


# Kinds that own a status slot in the report.
TRACKED_KINDS: Tuple[TaskKind, ...] = (
    TaskKind.CONTENT_TYPE,
    TaskKind.ENTROPY,
    TaskKind.ENTROPY_CHUNKS,
    TaskKind.STRINGS,
    TaskKind.IPS,
    TaskKind.URLS,
    TaskKind.STRUCTURED_REPORT,
)

# Kinds that must all be Completed for an analysis to count as complete.
COMPLETION_KINDS: Tuple[TaskKind, ...] = (
    TaskKind.ENTROPY,
    TaskKind.ENTROPY_CHUNKS,
    TaskKind.STRUCTURED_REPORT,
    TaskKind.STRINGS,
    TaskKind.IPS,
    TaskKind.URLS,
)


class TaskStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def rank(self) -> int:
        if self is TaskStatus.IDLE:
            return 0
        if self is TaskStatus.PENDING:
            return 1
        return 2


class Severity(str, Enum):
    INFO = "Info"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        """Map a parser-provided label onto a severity, defaulting to Info."""
        normalised = label.strip().lower()
        for member in cls:
            if member.value.lower() == normalised:
                return member
        return cls.INFO


class CompletionState(str, Enum):
    """Aggregate progress of one pipeline run."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "incomplete_with_failures"


class ItemKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class Heuristic:
    """Named, severity-tagged suspicious-indicator finding."""

    name: str
    severity: Severity


@dataclass(frozen=True)
class MetadataEntry:
    title: str
    value: str


@dataclass(frozen=True)
class ContentTypeInfo:
    """Classifier verdict for an artifact."""

    mime_type: Optional[str]
    group: Optional[str]
    description: Optional[str]
    extensions: Tuple[str, ...] = ()
    is_text: bool = False

    def metadata_entries(self) -> Tuple[MetadataEntry, ...]:
        return (
            MetadataEntry("Mime Type", self.mime_type or "unknown"),
            MetadataEntry("Description", self.description or "unknown"),
            MetadataEntry("Is Text", str(self.is_text).lower()),
            MetadataEntry("Group", self.group or "unknown"),
        )


@dataclass(frozen=True)
class StructuredItem:
    """One member of a container, addressed by a slash-delimited path."""

    path: str
    kind: ItemKind
    size: int
    data: Optional[bytes] = None
    encrypted: bool = False

    @property
    def scannable(self) -> bool:
        """True when the member can be re-submitted as its own artifact."""
        return self.kind is ItemKind.FILE and self.data is not None and not self.encrypted


ImportGraph = Mapping[str, Tuple[str, ...]]


@dataclass(frozen=True)
class ParseResult:
    """Everything a structured-format parser returns for one artifact."""

    items: Tuple[StructuredItem, ...] = ()
    imports: ImportGraph = field(default_factory=dict)
    heuristics: Tuple[Heuristic, ...] = ()
    metadata: Tuple[MetadataEntry, ...] = ()

    @property
    def content(self) -> "StructuredContent":
        return StructuredContent(items=self.items, imports=dict(self.imports))


@dataclass(frozen=True)
class StructuredContent:
    """The part of a parse result that lives in the report's structured slot."""

    items: Tuple[StructuredItem, ...] = ()
    imports: ImportGraph = field(default_factory=dict)

    @property
    def has_encrypted_items(self) -> bool:
        return any(item.encrypted for item in self.items)


@dataclass(frozen=True)
class TaskEvent:
    """Completion (or failure) notice for one sub-computation.

    ``kind`` is ``None`` only for requests the runner did not recognise.
    """

    kind: Optional[TaskKind]
    status: TaskStatus
    payload: Any = None
    error: Optional[str] = None
    needs_secret: bool = False

    @classmethod
    def pending(cls, kind: TaskKind) -> "TaskEvent":
        return cls(kind=kind, status=TaskStatus.PENDING)

    @classmethod
    def completed(cls, kind: TaskKind, payload: Any = None) -> "TaskEvent":
        return cls(kind=kind, status=TaskStatus.COMPLETED, payload=payload)

    @classmethod
    def failed(
        cls, kind: Optional[TaskKind], error: str, *, needs_secret: bool = False
    ) -> "TaskEvent":
        return cls(kind=kind, status=TaskStatus.FAILED, error=error, needs_secret=needs_secret)


@dataclass(frozen=True)
class Artifact:
    """A binary submitted for analysis."""

    name: str
    data: bytes
    declared_type: str = ""
    # True when declared_type was inferred from the name rather than supplied.
    declared_type_guessed: bool = False

    @classmethod
    def create(cls, name: str, data: bytes, declared_type: str | None = None) -> "Artifact":
        """Build an artifact, guessing the declared type from the name when absent."""
        if declared_type is not None:
            return cls(name=name, data=bytes(data), declared_type=declared_type)
        guessed = mimetypes.guess_type(name)[0] or ""
        return cls(name=name, data=bytes(data), declared_type=guessed, declared_type_guessed=True)

    @property
    def size(self) -> int:
        return len(self.data)


def _idle_status() -> Dict[TaskKind, TaskStatus]:
    return {kind: TaskStatus.IDLE for kind in TRACKED_KINDS}


@dataclass(frozen=True)
class Report:
    """Immutable snapshot of everything known about one pipeline run."""

    status: Mapping[TaskKind, TaskStatus] = field(default_factory=_idle_status)
    metadata: Tuple[MetadataEntry, ...] = ()
    entropy: Optional[float] = None
    entropy_chunks: Tuple[float, ...] = ()
    strings: Tuple[str, ...] = ()
    ips: Tuple[str, ...] = ()
    urls: Tuple[str, ...] = ()
    content_type: Optional[ContentTypeInfo] = None
    structured: Optional[StructuredContent] = None
    heuristics: Tuple[Heuristic, ...] = ()
    failures: Mapping[TaskKind, str] = field(default_factory=dict)
    secret_rejected: bool = False

    @property
    def needs_secret(self) -> bool:
        """True when the structured parse is blocked on a decryption secret."""
        if self.secret_rejected:
            return True
        return self.structured is not None and self.structured.has_encrypted_items

    def status_of(self, kind: TaskKind) -> TaskStatus:
        return self.status.get(kind, TaskStatus.IDLE)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; member bytes are reported by size only."""
        structured: Optional[Dict[str, Any]] = None
        if self.structured is not None:
            structured = {
                "items": [
                    {
                        "path": item.path,
                        "kind": item.kind.value,
                        "size": item.size,
                        "encrypted": item.encrypted,
                        "has_data": item.data is not None,
                    }
                    for item in self.structured.items
                ],
                "imports": {name: list(symbols) for name, symbols in self.structured.imports.items()},
            }
        content_type: Optional[Dict[str, Any]] = None
        if self.content_type is not None:
            content_type = {
                "mime_type": self.content_type.mime_type,
                "group": self.content_type.group,
                "description": self.content_type.description,
                "extensions": list(self.content_type.extensions),
                "is_text": self.content_type.is_text,
            }
        return {
            "status": {kind.value: status.value for kind, status in self.status.items()},
            "metadata": [{"title": entry.title, "value": entry.value} for entry in self.metadata],
            "entropy": self.entropy,
            "entropy_chunks": list(self.entropy_chunks),
            "strings": list(self.strings),
            "ips": list(self.ips),
            "urls": list(self.urls),
            "content_type": content_type,
            "structured": structured,
            "heuristics": [
                {"name": heuristic.name, "severity": heuristic.severity.value}
                for heuristic in self.heuristics
            ],
            "failures": {kind.value: message for kind, message in self.failures.items()},
            "needs_secret": self.needs_secret,
        }


@dataclass
class Session:
    """One open artifact; mutated only by the session manager."""

    id: str
    artifact: Artifact
    report: Report = field(default_factory=Report)
    depth: int = 0
    parent_id: Optional[str] = None
    run_id: int = 0

    @property
    def display_name(self) -> str:
        return self.artifact.name
