"""Folds task events into immutable report snapshots."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from typing import Any, Callable, Dict, Tuple

from .logging import get_logger
from .models import (
    COMPLETION_KINDS,
    CompletionState,
    ContentTypeInfo,
    Heuristic,
    MetadataEntry,
    ParseResult,
    Report,
    StructuredContent,
    TaskEvent,
    TaskKind,
    TaskStatus,
)

logger = get_logger("aggregator")

Handler = Callable[[Report, Any], Report]


def _as_tuple(payload: Any) -> Tuple[Any, ...]:
    if payload is None:
        return ()
    if isinstance(payload, (str, bytes)):
        return (payload,)
    if isinstance(payload, Iterable):
        return tuple(payload)
    return (payload,)


def _append_metadata(report: Report, payload: Any) -> Report:
    entries = tuple(entry for entry in _as_tuple(payload) if isinstance(entry, MetadataEntry))
    if not entries:
        return report
    return replace(report, metadata=report.metadata + entries)


def _append_heuristics(report: Report, payload: Any) -> Report:
    findings = tuple(item for item in _as_tuple(payload) if isinstance(item, Heuristic))
    if not findings:
        return report
    return replace(report, heuristics=report.heuristics + findings)


def _set_content_type(report: Report, payload: Any) -> Report:
    if not isinstance(payload, ContentTypeInfo):
        return report
    return replace(report, content_type=payload)


def _set_entropy(report: Report, payload: Any) -> Report:
    if payload is None:
        return report
    return replace(report, entropy=float(payload))


def _set_entropy_chunks(report: Report, payload: Any) -> Report:
    return replace(report, entropy_chunks=tuple(float(value) for value in _as_tuple(payload)))


def _set_strings(report: Report, payload: Any) -> Report:
    return replace(report, strings=_as_tuple(payload))


def _set_ips(report: Report, payload: Any) -> Report:
    return replace(report, ips=_as_tuple(payload))


def _set_urls(report: Report, payload: Any) -> Report:
    return replace(report, urls=_as_tuple(payload))


def _set_structured(report: Report, payload: Any) -> Report:
    if isinstance(payload, ParseResult):
        report = replace(report, structured=payload.content)
        report = _append_heuristics(report, payload.heuristics)
        return _append_metadata(report, payload.metadata)
    if isinstance(payload, StructuredContent):
        return replace(report, structured=payload)
    return report


_HANDLERS: Dict[TaskKind, Handler] = {
    TaskKind.CONTENT_TYPE: _set_content_type,
    TaskKind.ENTROPY: _set_entropy,
    TaskKind.ENTROPY_CHUNKS: _set_entropy_chunks,
    TaskKind.STRINGS: _set_strings,
    TaskKind.IPS: _set_ips,
    TaskKind.URLS: _set_urls,
    TaskKind.STRUCTURED_REPORT: _set_structured,
    TaskKind.METADATA: _append_metadata,
    TaskKind.HEURISTIC: _append_heuristics,
}

_missing = set(TaskKind) - set(_HANDLERS)
if _missing:  # pragma: no cover - guards additions to TaskKind
    raise RuntimeError(f"No report handler for task kinds: {sorted(kind.value for kind in _missing)}")


def _with_status(report: Report, kind: TaskKind, status: TaskStatus) -> Report:
    updated = dict(report.status)
    updated[kind] = status
    return replace(report, status=updated)


def reduce(report: Report, event: TaskEvent) -> Report:
    """Return the report that results from applying ``event`` to ``report``.

    Metadata and heuristic payloads accumulate regardless of status. A status
    slot never moves backwards: terminal states stay terminal and a stale
    Pending is ignored. Events without a kind leave the report untouched.
    """
    kind = event.kind
    if kind is None:
        logger.debug("Ignoring event without a task kind: %s", event.error)
        return report

    if kind in (TaskKind.METADATA, TaskKind.HEURISTIC):
        if event.error:
            logger.debug("%s task failed: %s", kind.value, event.error)
        return _HANDLERS[kind](report, event.payload)

    current = report.status_of(kind)
    if event.status.rank < current.rank:
        logger.debug("Dropping %s %s after %s", kind.value, event.status.value, current.value)
        return report

    if event.status is TaskStatus.COMPLETED:
        report = _HANDLERS[kind](report, event.payload)
        if kind in report.failures:
            failures = {key: value for key, value in report.failures.items() if key is not kind}
            report = replace(report, failures=failures)
        if kind is TaskKind.STRUCTURED_REPORT and report.secret_rejected:
            report = replace(report, secret_rejected=False)
    elif event.status is TaskStatus.FAILED:
        failures = dict(report.failures)
        failures[kind] = event.error or "failed"
        report = replace(report, failures=failures)
        if kind is TaskKind.STRUCTURED_REPORT:
            report = replace(report, structured=None, secret_rejected=event.needs_secret)

    return _with_status(report, kind, event.status)


def reduce_all(report: Report, events: Iterable[TaskEvent]) -> Report:
    for event in events:
        report = reduce(report, event)
    return report


def is_analysis_complete(report: Report) -> bool:
    """True iff every completion-relevant task has Completed."""
    return all(report.status_of(kind) is TaskStatus.COMPLETED for kind in COMPLETION_KINDS)


def completion_state(report: Report) -> CompletionState:
    """Distinguish a run still in progress from one that ended with failures."""
    statuses = [report.status_of(kind) for kind in COMPLETION_KINDS]
    if all(status is TaskStatus.COMPLETED for status in statuses):
        return CompletionState.COMPLETE
    if all(status.is_terminal for status in statuses):
        return CompletionState.FAILED
    return CompletionState.RUNNING


__all__ = ["completion_state", "is_analysis_complete", "reduce", "reduce_all"]
