"""Ordered set of open sessions, each bound to its latest pipeline run."""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from .aggregator import completion_state, is_analysis_complete, reduce
from .config import InfectioConfig, default_config
from .gateway import EngineGateway, default_gateway
from .logging import get_logger
from .models import (
    Artifact,
    CompletionState,
    ItemKind,
    Report,
    Session,
    StructuredItem,
    TaskEvent,
    TaskKind,
    TaskStatus,
)
from .runner import PipelineRequest, TaskRunner

logger = get_logger("sessions")

RunnerFactory = Callable[[], TaskRunner]


class SessionError(LookupError):
    """Raised when an operation names a session that is not open."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class MemberScanError(ValueError):
    """Raised when a structured item cannot be re-submitted as an artifact."""


def _fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class SessionManager:
    """Owns the session list, the selection cursor and every pipeline run.

    Operations are expected to be called from the event loop thread; each
    pipeline run is an :class:`asyncio.Task` that feeds the session's report
    through :func:`infectio.aggregator.reduce`. Closing a session does not
    cancel its run. Events that arrive for a closed session, or from a run
    superseded by a retry, are dropped.
    """

    def __init__(
        self,
        gateway: Optional[EngineGateway] = None,
        config: Optional[InfectioConfig] = None,
        runner_factory: Optional[RunnerFactory] = None,
    ) -> None:
        self.config = config or default_config()
        self.gateway = gateway or default_gateway()
        self._runner_factory = runner_factory or self._default_runner
        self._sessions: List[Session] = []
        self._selected: Optional[int] = None
        self._latest: Dict[str, "asyncio.Task[None]"] = {}
        self._running: Set["asyncio.Task[None]"] = set()
        self._fingerprints: Dict[str, str] = {}

    def _default_runner(self) -> TaskRunner:
        return TaskRunner.from_config(self.gateway, self.config.analysis)

    # ------------------------------------------------------------------
    # Read accessors

    @property
    def sessions(self) -> Tuple[Session, ...]:
        return tuple(self._sessions)

    @property
    def selected_index(self) -> Optional[int]:
        return self._selected

    @property
    def selected(self) -> Optional[Session]:
        if self._selected is None:
            return None
        return self._sessions[self._selected]

    def get(self, session_id: str) -> Session:
        for session in self._sessions:
            if session.id == session_id:
                return session
        raise SessionError(session_id)

    def report(self, session_id: str) -> Report:
        return self.get(session_id).report

    def is_analysis_complete(self, session_id: str) -> bool:
        return is_analysis_complete(self.report(session_id))

    def is_running(self, session_id: str) -> bool:
        self.get(session_id)
        task = self._latest.get(session_id)
        return task is not None and not task.done()

    def completion_state(self, session_id: str) -> CompletionState:
        """Tri-state progress of the session's current run.

        A run that ended without completing every task counts as failed, which
        covers runs that produced no events because the engines are unavailable.
        """
        state = completion_state(self.report(session_id))
        if state is CompletionState.RUNNING and not self.is_running(session_id):
            return CompletionState.FAILED
        return state

    # ------------------------------------------------------------------
    # Session operations

    def open(self, artifact: Artifact, *, depth: int = 0, parent_id: Optional[str] = None) -> str:
        """Add a session for ``artifact``, select it and start its pipeline run."""
        session = Session(id=uuid.uuid4().hex[:12], artifact=artifact, depth=depth, parent_id=parent_id)
        self._sessions.append(session)
        self._selected = len(self._sessions) - 1
        self._fingerprints[session.id] = _fingerprint(artifact.data)
        logger.info("Opened session %s for %s (%d bytes)", session.id, artifact.name, artifact.size)
        self._spawn(session, None)
        return session.id

    def close(self, session_id: str) -> None:
        """Remove a session; a selected session hands the cursor to its predecessor."""
        index = self._index_of(session_id)
        del self._sessions[index]
        self._latest.pop(session_id, None)
        self._fingerprints.pop(session_id, None)
        logger.info("Closed session %s", session_id)

        if not self._sessions:
            self._selected = None
        elif self._selected is not None:
            if self._selected == index:
                self._selected = max(index - 1, 0)
            elif self._selected > index:
                self._selected -= 1

    def select(self, session_id: str) -> Session:
        self._selected = self._index_of(session_id)
        return self._sessions[self._selected]

    def retry_with_secret(self, session_id: str, secret: str) -> None:
        """Start a fresh pipeline run for the session with a decryption secret.

        The session keeps its id and position; its report starts over empty.
        """
        session = self.get(session_id)
        logger.info("Retrying session %s with a secret", session_id)
        self._spawn(session, secret)

    def scan_member(self, parent_id: str, item: StructuredItem) -> str:
        """Open a session for a structured item's bytes and return its id.

        With member de-duplication enabled, an already open session holding
        the same bytes is selected instead.
        """
        parent = self.get(parent_id)
        data = self._member_bytes(item)
        depth = parent.depth + 1
        limit = self.config.sessions.max_scan_depth
        if depth > limit:
            raise MemberScanError(f"Member {item.path} exceeds the scan depth limit of {limit}")

        if self.config.sessions.dedupe_members:
            fingerprint = _fingerprint(data)
            for session_id, known in self._fingerprints.items():
                if known == fingerprint:
                    logger.info("Member %s is already open as session %s", item.path, session_id)
                    self.select(session_id)
                    return session_id

        logger.info("Scanning member %s of session %s", item.path, parent_id)
        return self.open(Artifact.create(item.path, data), depth=depth, parent_id=parent_id)

    def find_member(self, session_id: str, path: str) -> StructuredItem:
        """Look up a structured item of a session's report by its path."""
        structured = self.report(session_id).structured
        if structured is not None:
            for item in structured.items:
                if item.path == path:
                    return item
        raise MemberScanError(f"No member {path!r} in session {session_id}")

    async def preview_entropy(self, item: StructuredItem) -> List[float]:
        """Chunk entropy of a member without opening a session for it."""
        data = self._member_bytes(item)
        runner = self._runner_factory()
        chunks: List[float] = []
        async for event in runner.run_request(PipelineRequest.ENTROPY_CHUNKS.value, Artifact.create(item.path, data)):
            if event.kind is not TaskKind.ENTROPY_CHUNKS:
                continue
            if event.status is TaskStatus.FAILED:
                raise MemberScanError(f"Entropy preview of {item.path} failed: {event.error}")
            if event.status is TaskStatus.COMPLETED:
                chunks = [float(value) for value in event.payload or ()]
        return chunks

    # ------------------------------------------------------------------
    # Run management

    async def wait(self, session_id: str) -> Report:
        """Wait for the session's current pipeline run and return its report."""
        self.get(session_id)
        task = self._latest.get(session_id)
        if task is not None:
            await task
        return self.report(session_id)

    async def drain(self) -> None:
        """Wait until no pipeline run is in flight, including orphaned ones."""
        while self._running:
            await asyncio.gather(*list(self._running))

    def _spawn(self, session: Session, secret: Optional[str]) -> None:
        session.run_id += 1
        session.report = Report()
        runner = self._runner_factory()
        task = asyncio.create_task(
            self._consume(session.id, session.run_id, runner, session.artifact, secret),
            name=f"infectio-{session.id}-run{session.run_id}",
        )
        self._latest[session.id] = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _consume(
        self,
        session_id: str,
        run_id: int,
        runner: TaskRunner,
        artifact: Artifact,
        secret: Optional[str],
    ) -> None:
        async for event in runner.run(artifact, secret):
            self._apply(session_id, run_id, event)
        logger.debug("Run %d of session %s finished", run_id, session_id)

    def _apply(self, session_id: str, run_id: int, event: TaskEvent) -> None:
        session = next((item for item in self._sessions if item.id == session_id), None)
        if session is None or session.run_id != run_id:
            logger.debug(
                "Discarding %s event for session %s run %d",
                event.kind.value if event.kind else "untyped",
                session_id,
                run_id,
            )
            return
        session.report = reduce(session.report, event)

    # ------------------------------------------------------------------
    # Helpers

    def _index_of(self, session_id: str) -> int:
        for index, session in enumerate(self._sessions):
            if session.id == session_id:
                return index
        raise SessionError(session_id)

    @staticmethod
    def _member_bytes(item: StructuredItem) -> bytes:
        if item.kind is not ItemKind.FILE:
            raise MemberScanError(f"{item.path} is a directory")
        if item.encrypted:
            raise MemberScanError(f"{item.path} is encrypted; retry the parent with a secret first")
        if item.data is None:
            raise MemberScanError(f"{item.path} has no extracted bytes")
        return item.data


__all__ = ["MemberScanError", "RunnerFactory", "SessionError", "SessionManager"]
