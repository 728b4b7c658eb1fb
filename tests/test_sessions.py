"""Session manager tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from infectio.config import InfectioConfig, SessionConfig
from infectio.gateway import EngineGateway
from infectio.models import Artifact, CompletionState, ItemKind, StructuredItem, TaskKind, TaskStatus
from infectio.sessions import MemberScanError, SessionError, SessionManager
from tests._fixtures.builders import build_encrypted_zip, build_zip
from tests._fixtures.engines import FakeEngines, gateway_for


def _config(**sessions) -> InfectioConfig:
    return InfectioConfig(root=Path("."), sessions=SessionConfig(**sessions))


def _real_manager(config: Optional[InfectioConfig] = None) -> SessionManager:
    return SessionManager(gateway=EngineGateway(), config=config)


def test_open_selects_and_completes(fake_engines: FakeEngines) -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(fake_engines))
        first = manager.open(Artifact("a.txt", b"hello world", "text/plain"))
        second = manager.open(Artifact("b.txt", b"second file", "text/plain"))

        assert manager.selected is not None and manager.selected.id == second
        assert manager.report(first).status_of(TaskKind.STRINGS) is TaskStatus.IDLE

        await manager.wait(first)
        assert manager.is_analysis_complete(first) is True
        assert manager.completion_state(first) is CompletionState.COMPLETE
        await manager.drain()

    asyncio.run(scenario())


def test_close_moves_selection_to_previous(fake_engines: FakeEngines) -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(fake_engines))
        a = manager.open(Artifact("a", b"a"))
        b = manager.open(Artifact("b", b"b"))
        c = manager.open(Artifact("c", b"c"))
        manager.select(b)

        manager.close(b)
        assert [session.id for session in manager.sessions] == [a, c]
        assert manager.selected_index == 0
        assert manager.selected is not None and manager.selected.id == a

        manager.close(a)
        assert manager.selected is not None and manager.selected.id == c
        manager.close(c)
        assert manager.sessions == ()
        assert manager.selected is None
        await manager.drain()

    asyncio.run(scenario())


def test_closing_an_unselected_session_keeps_the_selection(fake_engines: FakeEngines) -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(fake_engines))
        a = manager.open(Artifact("a", b"a"))
        manager.open(Artifact("b", b"b"))
        c = manager.open(Artifact("c", b"c"))

        manager.close(a)
        assert manager.selected is not None and manager.selected.id == c
        await manager.drain()

    asyncio.run(scenario())


def test_events_for_closed_sessions_are_discarded() -> None:
    engines = FakeEngines(delays={"entropy": 0.1})

    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(engines))
        session_id = manager.open(Artifact("a", b"payload"))
        manager.close(session_id)
        await manager.drain()

        assert manager.sessions == ()
        with pytest.raises(SessionError):
            manager.report(session_id)

    asyncio.run(scenario())
    assert engines.called("entropy")


def test_retry_discards_the_superseded_run() -> None:
    engines = FakeEngines(delays={"entropy": 0.1})

    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(engines))
        session_id = manager.open(Artifact("a", b"payload"))
        await asyncio.sleep(0)
        manager.retry_with_secret(session_id, "secret")
        await manager.drain()

        report = manager.report(session_id)
        assert [entry.title for entry in report.metadata].count("MD5") == 1
        assert report.entropy == 4.5
        assert [session.id for session in manager.sessions] == [session_id]

    asyncio.run(scenario())
    secrets = [call[3] for call in engines.called("parse_structured")]
    assert sorted(secrets, key=str) == sorted([None, "secret"], key=str)


def test_unknown_session_operations_raise(fake_engines: FakeEngines) -> None:
    manager = SessionManager(gateway=gateway_for(fake_engines))
    with pytest.raises(SessionError):
        manager.close("missing")
    with pytest.raises(SessionError):
        manager.retry_with_secret("missing", "pw")
    with pytest.raises(SessionError):
        manager.select("missing")


def test_encrypted_archive_retry_with_secret() -> None:
    data = build_encrypted_zip({"secret.txt": b"top secret"}, "infected")

    async def scenario() -> None:
        manager = _real_manager()
        manager.open(Artifact.create("other.txt", b"unrelated text file"))
        session_id = manager.open(Artifact.create("sample.zip", data))

        first = await manager.wait(session_id)
        assert first.needs_secret is True
        assert first.structured is not None
        (locked,) = first.structured.items
        assert locked.encrypted is True and locked.data is None

        manager.retry_with_secret(session_id, "infected")
        assert manager.report(session_id).structured is None
        second = await manager.wait(session_id)

        (unlocked,) = second.structured.items
        assert unlocked.encrypted is False
        assert unlocked.data == b"top secret"
        assert second.needs_secret is False
        digests = {"MD5", "SHA1", "SHA256"}
        assert {e for e in first.metadata if e.title in digests} == {e for e in second.metadata if e.title in digests}
        assert [session.id for session in manager.sessions].index(session_id) == 1
        await manager.drain()

    asyncio.run(scenario())


def test_wrong_secret_fails_structured_report() -> None:
    data = build_encrypted_zip({"secret.txt": b"top secret"}, "infected")

    async def scenario() -> None:
        manager = _real_manager()
        session_id = manager.open(Artifact.create("sample.zip", data))
        await manager.wait(session_id)
        manager.retry_with_secret(session_id, "wrong")
        report = await manager.wait(session_id)

        assert report.status_of(TaskKind.STRUCTURED_REPORT) is TaskStatus.FAILED
        assert report.needs_secret is True
        assert manager.completion_state(session_id) is CompletionState.FAILED
        await manager.drain()

    asyncio.run(scenario())


def test_member_rescan_opens_independent_session() -> None:
    payload = bytes(range(200)) * 3
    data = build_zip({"docs/payload.bin": payload, "docs/readme.txt": b"read me please"})

    async def scenario() -> None:
        manager = _real_manager()
        parent_id = manager.open(Artifact.create("bundle.zip", data))
        report = await manager.wait(parent_id)

        item = manager.find_member(parent_id, "docs/payload.bin")
        member_id = manager.scan_member(parent_id, item)
        member = manager.get(member_id)

        assert member.artifact.data == payload
        assert member.artifact.name == "docs/payload.bin"
        assert member.depth == 1 and member.parent_id == parent_id
        assert manager.selected is member

        member_report = await manager.wait(member_id)
        assert member_report.entropy_chunks and len(member_report.entropy_chunks) == 3
        assert manager.report(parent_id) is report
        await manager.drain()

    asyncio.run(scenario())


def test_duplicate_members_select_the_open_session() -> None:
    item = StructuredItem("copy.bin", ItemKind.FILE, 4, b"same")

    async def scenario(dedupe: bool) -> int:
        manager = SessionManager(gateway=gateway_for(FakeEngines()), config=_config(dedupe_members=dedupe))
        parent_id = manager.open(Artifact("parent.zip", b"PK"))
        first = manager.scan_member(parent_id, item)
        manager.select(parent_id)
        second = manager.scan_member(parent_id, item)
        assert (first == second) is dedupe
        assert manager.selected is manager.get(second)
        await manager.drain()
        return len(manager.sessions)

    assert asyncio.run(scenario(True)) == 2
    assert asyncio.run(scenario(False)) == 3


def test_member_that_equals_its_parent_is_not_reopened() -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(FakeEngines()))
        parent_id = manager.open(Artifact("loop.bin", b"self"))
        assert manager.scan_member(parent_id, StructuredItem("loop.bin", ItemKind.FILE, 4, b"self")) == parent_id
        await manager.drain()

    asyncio.run(scenario())


def test_scan_depth_is_bounded() -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(FakeEngines()), config=_config(max_scan_depth=1))
        parent_id = manager.open(Artifact("a.zip", b"PK"))
        child_id = manager.scan_member(parent_id, StructuredItem("b.zip", ItemKind.FILE, 2, b"PK2"))
        with pytest.raises(MemberScanError, match="depth"):
            manager.scan_member(child_id, StructuredItem("c.zip", ItemKind.FILE, 3, b"PK3"))
        await manager.drain()

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "item",
    [
        StructuredItem("docs/", ItemKind.DIRECTORY, 0),
        StructuredItem("secret.txt", ItemKind.FILE, 10, encrypted=True),
        StructuredItem("missing.bin", ItemKind.FILE, 10),
    ],
)
def test_invalid_members_are_rejected(item: StructuredItem) -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(FakeEngines()))
        parent_id = manager.open(Artifact("a.zip", b"PK"))
        with pytest.raises(MemberScanError):
            manager.scan_member(parent_id, item)
        await manager.drain()

    asyncio.run(scenario())


def test_preview_entropy_does_not_open_a_session() -> None:
    async def scenario() -> None:
        manager = _real_manager()
        chunks = await manager.preview_entropy(StructuredItem("x.bin", ItemKind.FILE, 300, bytes(300)))
        assert chunks == [0.0, 0.0]
        assert manager.sessions == ()

    asyncio.run(scenario())


def test_find_member_reports_missing_paths(fake_engines: FakeEngines) -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(fake_engines))
        session_id = manager.open(Artifact("a", b"a"))
        await manager.wait(session_id)
        with pytest.raises(MemberScanError):
            manager.find_member(session_id, "nope")
        await manager.drain()

    asyncio.run(scenario())


def test_fatal_engines_leave_an_empty_report_marked_failed() -> None:
    async def scenario() -> None:
        manager = SessionManager(gateway=gateway_for(FakeEngines(initialize_error="no engines")))
        session_id = manager.open(Artifact("a.bin", b"data"))
        assert manager.completion_state(session_id) is CompletionState.RUNNING

        report = await manager.wait(session_id)
        assert all(status is TaskStatus.IDLE for status in report.status.values())
        assert manager.is_running(session_id) is False
        assert manager.completion_state(session_id) is CompletionState.FAILED

    asyncio.run(scenario())
