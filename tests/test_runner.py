"""Task runner tests driven by fake engines."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from infectio.aggregator import reduce_all
from infectio.config import AnalysisConfig
from infectio.engines import content_type_for
from infectio.engines.parsers import SecretRejectedError, UnsupportedFormatError
from infectio.models import (
    TRACKED_KINDS,
    Artifact,
    Heuristic,
    ItemKind,
    MetadataEntry,
    ParseResult,
    Report,
    Severity,
    StructuredItem,
    TaskEvent,
    TaskKind,
    TaskStatus,
)
from infectio.runner import MISMATCH_HEURISTIC, TaskRunner, declared_type_disagrees
from tests._fixtures.engines import FakeEngines, collect, gateway_for


def _run(engines: FakeEngines, artifact: Artifact, secret: str | None = None, **kwargs) -> List[TaskEvent]:
    runner = TaskRunner(gateway_for(engines), **kwargs)
    return collect(runner.run(artifact, secret))


def _of(events: List[TaskEvent], kind: TaskKind) -> List[TaskEvent]:
    return [event for event in events if event.kind is kind]


def _terminal(events: List[TaskEvent], kind: TaskKind) -> TaskEvent:
    (event,) = [event for event in _of(events, kind) if event.status.is_terminal]
    return event


def test_full_run_reports_every_task(fake_engines: FakeEngines) -> None:
    events = _run(fake_engines, Artifact("notes.txt", b"hello world", "text/plain"))
    report = reduce_all(Report(), events)

    assert events[: len(TRACKED_KINDS)] == [TaskEvent.pending(kind) for kind in TRACKED_KINDS]
    for kind in TRACKED_KINDS:
        assert report.status_of(kind) is TaskStatus.COMPLETED
    assert report.entropy == 4.5
    assert report.entropy_chunks == (1.0, 2.0, 3.0)
    assert report.strings == ("http://a", "10.0.0.1")
    assert report.ips == ("10.0.0.1",)
    assert report.urls == ("http://a",)
    assert report.heuristics == ()
    titles = [entry.title for entry in report.metadata]
    assert sorted(titles) == sorted(
        ["Mime Type", "Description", "Is Text", "Group", "Entropy", "MD5", "SHA1", "SHA256"]
    )


def test_runner_forwards_configured_parameters(fake_engines: FakeEngines) -> None:
    config = AnalysisConfig(chunk_size=64, min_string_length=8)
    runner = TaskRunner.from_config(gateway_for(fake_engines), config)
    collect(runner.run(Artifact("a.bin", b"data")))

    assert fake_engines.called("entropy_by_chunks")[0][2] == 64
    assert fake_engines.called("extract_strings")[0][2] == 8


def test_mismatch_heuristic_when_declared_type_disagrees() -> None:
    engines = FakeEngines(content_type=content_type_for("pdf"))
    events = _run(engines, Artifact("invoice.txt", b"%PDF-1.7", "text/plain"))
    report = reduce_all(Report(), events)

    assert report.heuristics == (Heuristic("Content type mismatch", Severity.MEDIUM),)
    assert report.content_type is not None
    assert report.content_type.mime_type == "application/pdf"
    assert engines.called("parse_structured")[0][2] == "application/pdf"


def test_supplied_type_mismatch_ignores_matching_extension() -> None:
    engines = FakeEngines(content_type=content_type_for("pdf"))
    events = _run(engines, Artifact("invoice.pdf", b"%PDF-1.7", "text/plain"))
    report = reduce_all(Report(), events)

    assert report.heuristics == (MISMATCH_HEURISTIC,)


def test_guessed_type_defers_to_matching_extension() -> None:
    pe = content_type_for("pe")
    guessed = Artifact("setup.exe", b"", "application/x-msdownload", declared_type_guessed=True)
    assert declared_type_disagrees(guessed, pe) is False
    assert declared_type_disagrees(Artifact("setup.exe", b"", "application/x-msdownload"), pe) is True
    assert declared_type_disagrees(Artifact("blob", b"", ""), pe) is False
    assert declared_type_disagrees(Artifact.create("readme.txt", b""), pe) is True
    assert Artifact.create("readme.txt", b"").declared_type_guessed is True
    assert Artifact.create("readme.txt", b"", "text/plain").declared_type_guessed is False


def test_digest_failure_is_reported_per_digest() -> None:
    engines = FakeEngines(failures={"digest"})
    events = _run(engines, Artifact("a.bin", b"data"))
    report = reduce_all(Report(), events)

    failed = [event for event in _of(events, TaskKind.METADATA) if event.status is TaskStatus.FAILED]
    assert sorted(event.error for event in failed) == [
        "MD5: digest exploded",
        "SHA1: digest exploded",
        "SHA256: digest exploded",
    ]
    for kind in (TaskKind.ENTROPY, TaskKind.STRINGS, TaskKind.STRUCTURED_REPORT):
        assert report.status_of(kind) is TaskStatus.COMPLETED
    titles = [entry.title for entry in report.metadata]
    assert "Entropy" in titles
    assert not {"MD5", "SHA1", "SHA256"} & set(titles)


def test_strings_failure_propagates_to_indicators() -> None:
    engines = FakeEngines(failures={"extract_strings"})
    events = _run(engines, Artifact("a.bin", b"data"))

    assert _terminal(events, TaskKind.STRINGS).status is TaskStatus.FAILED
    assert _terminal(events, TaskKind.IPS).status is TaskStatus.FAILED
    assert _terminal(events, TaskKind.URLS).status is TaskStatus.FAILED
    assert _terminal(events, TaskKind.IPS).error == "String extraction failed"
    assert engines.called("extract_ips") == []
    for kind in (TaskKind.ENTROPY, TaskKind.ENTROPY_CHUNKS, TaskKind.STRUCTURED_REPORT, TaskKind.CONTENT_TYPE):
        assert _terminal(events, kind).status is TaskStatus.COMPLETED


def test_indicators_use_exactly_the_extracted_strings() -> None:
    engines = FakeEngines(strings=["http://a", "10.0.0.1"], delays={"extract_strings": 0.05})
    _run(engines, Artifact("a.bin", b"bytes that do not matter"))

    assert engines.called("extract_ips") == [("extract_ips", ("http://a", "10.0.0.1"))]
    assert engines.called("extract_urls") == [("extract_urls", ("http://a", "10.0.0.1"))]


def test_indicator_timeout_starts_after_strings_complete() -> None:
    engines = FakeEngines(delays={"extract_strings": 0.3, "extract_ips": 0.2})
    events = _run(engines, Artifact("a.bin", b"data"), task_timeout=0.4)

    assert _terminal(events, TaskKind.IPS).status is TaskStatus.COMPLETED
    assert _terminal(events, TaskKind.URLS).status is TaskStatus.COMPLETED


def test_slow_task_times_out_in_isolation() -> None:
    engines = FakeEngines(delays={"entropy": 0.3})
    events = _run(engines, Artifact("a.bin", b"data"), task_timeout=0.05)

    entropy = _terminal(events, TaskKind.ENTROPY)
    assert entropy.status is TaskStatus.FAILED
    assert entropy.error == "Timed out after 0.05s"
    assert _terminal(events, TaskKind.STRINGS).status is TaskStatus.COMPLETED
    assert not [e for e in _of(events, TaskKind.METADATA) if e.payload == MetadataEntry("Entropy", "4.5")]


def test_parse_failure_is_isolated() -> None:
    engines = FakeEngines(parse_error=UnsupportedFormatError("text/plain"))
    events = _run(engines, Artifact("a.txt", b"hello"))

    structured = _terminal(events, TaskKind.STRUCTURED_REPORT)
    assert structured.status is TaskStatus.FAILED
    assert structured.error == "Unsupported file type: text/plain"
    assert structured.needs_secret is False
    others = [kind for kind in TRACKED_KINDS if kind is not TaskKind.STRUCTURED_REPORT]
    assert all(_terminal(events, kind).status is TaskStatus.COMPLETED for kind in others)


def test_rejected_secret_is_flagged() -> None:
    engines = FakeEngines(parse_error=SecretRejectedError("Incorrect secret for encrypted archive"))
    events = _run(engines, Artifact("a.zip", b"PK"), secret="wrong")

    structured = _terminal(events, TaskKind.STRUCTURED_REPORT)
    assert structured.needs_secret is True
    assert engines.called("parse_structured")[0][3] == "wrong"


def test_classification_failure_fails_structured_parse_only() -> None:
    engines = FakeEngines(failures={"classify"})
    events = _run(engines, Artifact("a.bin", b"data"))

    assert _terminal(events, TaskKind.CONTENT_TYPE).status is TaskStatus.FAILED
    assert _terminal(events, TaskKind.STRUCTURED_REPORT).status is TaskStatus.FAILED
    assert engines.called("parse_structured") == []
    assert _terminal(events, TaskKind.ENTROPY).status is TaskStatus.COMPLETED


def test_structured_result_carries_embedded_findings() -> None:
    result = ParseResult(
        items=(StructuredItem("docs/payload.bin", ItemKind.FILE, 3, b"abc"),),
        heuristics=(Heuristic("Contains JavaScript", Severity.HIGH),),
    )
    engines = FakeEngines(content_type=content_type_for("zip"), parse_result=result)
    report = reduce_all(Report(), _run(engines, Artifact("a.zip", b"PK", "application/zip")))

    assert report.structured is not None
    assert report.structured.items[0].data == b"abc"
    assert report.heuristics == (Heuristic("Contains JavaScript", Severity.HIGH),)


def test_fatal_gateway_yields_no_events() -> None:
    engines = FakeEngines(initialize_error="classifier model missing")
    assert _run(engines, Artifact("a.bin", b"data")) == []


def test_runner_serves_a_single_run(fake_engines: FakeEngines) -> None:
    runner = TaskRunner(gateway_for(fake_engines))
    collect(runner.run(Artifact("a.bin", b"data")))
    with pytest.raises(RuntimeError):
        collect(runner.run(Artifact("a.bin", b"data")))


def test_unknown_request_fails_without_kind(fake_engines: FakeEngines) -> None:
    runner = TaskRunner(gateway_for(fake_engines))
    events = collect(runner.run_request("disassemble", Artifact("a.bin", b"data")))

    assert events == [TaskEvent.failed(None, "Unknown task")]
    assert fake_engines.calls == []


def test_entropy_chunks_request_runs_only_that_task(fake_engines: FakeEngines) -> None:
    runner = TaskRunner(gateway_for(fake_engines))
    events = collect(runner.run_request("entropy_chunks", Artifact("a.bin", b"data")))

    assert [event.kind for event in events] == [TaskKind.ENTROPY_CHUNKS, TaskKind.ENTROPY_CHUNKS]
    assert events[-1].payload == (1.0, 2.0, 3.0)
    assert fake_engines.called("entropy") == []


def test_consumer_leaving_early_cancels_pending_work() -> None:
    engines = FakeEngines(delays={"entropy": 0.2})

    async def _first_terminal() -> TaskEvent:
        stream = TaskRunner(gateway_for(engines)).run(Artifact("a.bin", b"data"))
        async for event in stream:
            if event.status.is_terminal:
                await stream.aclose()
                return event
        raise AssertionError("no terminal event")

    event = asyncio.run(_first_terminal())
    assert event.status.is_terminal
