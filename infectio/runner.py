"""Per-artifact pipeline: fans out the analysis tasks and streams their events."""

from __future__ import annotations

import asyncio
import os
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from .config import AnalysisConfig
from .engines import DIGESTS, AnalysisEngines
from .gateway import EngineGateway, GatewayError
from .logging import get_logger
from .models import (
    TRACKED_KINDS,
    Artifact,
    ContentTypeInfo,
    Heuristic,
    MetadataEntry,
    Severity,
    TaskEvent,
    TaskKind,
)

logger = get_logger("runner")

MISMATCH_HEURISTIC = Heuristic("Content type mismatch", Severity.MEDIUM)
UNKNOWN_TASK = "Unknown task"


class PipelineRequest(str, Enum):
    """Named requests a runner accepts through :meth:`TaskRunner.run_request`."""

    ANALYZE = "analyze"
    ENTROPY_CHUNKS = "entropy_chunks"


class TaskTimeout(Exception):
    """A single task exceeded the configured timeout."""


class _Failed:
    """Marker returned by a task that already reported its failure."""


_FAILED = _Failed()
_DONE = object()

Emit = Callable[[TaskEvent], None]


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


def declared_type_disagrees(artifact: Artifact, content_type: ContentTypeInfo) -> bool:
    """True when the artifact's declared type contradicts the detected one.

    An artifact without a declared type makes no claim. A type guessed from
    the name only disagrees when the extension is not one the detected type
    is known by; a caller-supplied type must match the detected mime type.
    """
    declared = artifact.declared_type.strip().lower()
    if not declared or content_type.mime_type is None:
        return False
    if declared == content_type.mime_type.lower():
        return False
    if not artifact.declared_type_guessed:
        return True
    extension = os.path.splitext(artifact.name)[1].lstrip(".").lower()
    return not (extension and extension in content_type.extensions)


class TaskRunner:
    """Runs every analysis task for one artifact and yields a :class:`TaskEvent` per result.

    One instance serves exactly one pipeline execution. Tasks are independent
    failure domains except that indicator extraction consumes the output of
    string extraction, and the structured parse waits for classification.
    """

    def __init__(
        self,
        gateway: EngineGateway,
        *,
        chunk_size: int = 256,
        min_string_length: int = 5,
        task_timeout: Optional[float] = None,
    ) -> None:
        self._gateway = gateway
        self.chunk_size = chunk_size
        self.min_string_length = min_string_length
        self.task_timeout = task_timeout
        self._started = False

    @classmethod
    def from_config(cls, gateway: EngineGateway, config: AnalysisConfig) -> "TaskRunner":
        return cls(
            gateway,
            chunk_size=config.chunk_size,
            min_string_length=config.min_string_length,
            task_timeout=config.task_timeout,
        )

    async def run(self, artifact: Artifact, secret: Optional[str] = None) -> AsyncIterator[TaskEvent]:
        """Stream the events of a full analysis of ``artifact``.

        Ends without yielding anything when the engines cannot be initialized.
        """
        self._claim()
        engines = await self._engines(artifact)
        if engines is None:
            return
        for kind in TRACKED_KINDS:
            yield TaskEvent.pending(kind)

        pipeline = self._drain(
            lambda emit: [
                self._classify_then_parse(engines, artifact, secret, emit),
                self._entropy(engines, artifact, emit),
                self._compute(
                    TaskKind.ENTROPY_CHUNKS, emit, engines.entropy_by_chunks, artifact.data, self.chunk_size
                ),
                self._strings_then_indicators(engines, artifact, emit),
                *(self._digest(engines, title, artifact, emit) for title, _ in DIGESTS),
            ]
        )
        async with aclosing(pipeline) as events:
            async for event in events:
                yield event

    async def run_request(
        self, name: str, artifact: Artifact, secret: Optional[str] = None
    ) -> AsyncIterator[TaskEvent]:
        """Stream the events of one named request (see :class:`PipelineRequest`).

        An unrecognised name yields a single Failed event without a kind.
        """
        try:
            request = PipelineRequest(name)
        except ValueError:
            logger.warning("Rejected unknown task request %r", name)
            self._claim()
            yield TaskEvent.failed(None, UNKNOWN_TASK)
            return

        if request is PipelineRequest.ANALYZE:
            async with aclosing(self.run(artifact, secret)) as events:
                async for event in events:
                    yield event
            return

        self._claim()
        engines = await self._engines(artifact)
        if engines is None:
            return
        yield TaskEvent.pending(TaskKind.ENTROPY_CHUNKS)
        pipeline = self._drain(
            lambda emit: [
                self._compute(
                    TaskKind.ENTROPY_CHUNKS, emit, engines.entropy_by_chunks, artifact.data, self.chunk_size
                )
            ]
        )
        async with aclosing(pipeline) as events:
            async for event in events:
                yield event

    # ------------------------------------------------------------------
    # Internal helpers

    def _claim(self) -> None:
        if self._started:
            raise RuntimeError("TaskRunner instances serve a single pipeline run")
        self._started = True

    async def _engines(self, artifact: Artifact) -> Optional[AnalysisEngines]:
        try:
            return await self._gateway.ensure_initialized()
        except GatewayError as exc:
            logger.warning("Skipping analysis of %s: %s", artifact.name, exc.reason)
            return None

    async def _drain(
        self, build: Callable[[Emit], List[Awaitable[Any]]]
    ) -> AsyncIterator[TaskEvent]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        tasks = [asyncio.ensure_future(job) for job in build(queue.put_nowait)]

        async def _supervise() -> None:
            try:
                await asyncio.gather(*tasks)
            finally:
                queue.put_nowait(_DONE)

        supervisor = asyncio.ensure_future(_supervise())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            await supervisor
        finally:
            # Consumer left early: stop producing into a queue nobody reads.
            for task in (*tasks, supervisor):
                if not task.done():
                    task.cancel()

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        work = asyncio.to_thread(func, *args)
        if self.task_timeout is None:
            return await work
        try:
            return await asyncio.wait_for(work, timeout=self.task_timeout)
        except asyncio.TimeoutError as exc:
            raise TaskTimeout(f"Timed out after {self.task_timeout:g}s") from exc

    async def _compute(self, kind: TaskKind, emit: Emit, func: Callable[..., Any], *args: Any) -> Any:
        logger.debug("Starting %s", kind.value)
        try:
            result = await self._call(func, *args)
        except Exception as exc:
            logger.warning("Task %s failed: %s", kind.value, _describe(exc))
            emit(
                TaskEvent.failed(
                    kind, _describe(exc), needs_secret=bool(getattr(exc, "needs_secret", False))
                )
            )
            return _FAILED
        emit(TaskEvent.completed(kind, _freeze(result)))
        return result

    async def _classify_then_parse(
        self, engines: AnalysisEngines, artifact: Artifact, secret: Optional[str], emit: Emit
    ) -> None:
        content_type = await self._compute(TaskKind.CONTENT_TYPE, emit, engines.classify, artifact.data)
        if content_type is _FAILED:
            emit(TaskEvent.failed(TaskKind.STRUCTURED_REPORT, "Content type detection failed"))
            return

        emit(TaskEvent.completed(TaskKind.METADATA, content_type.metadata_entries()))
        if declared_type_disagrees(artifact, content_type):
            logger.info(
                "%s declared as %s but detected as %s",
                artifact.name,
                artifact.declared_type,
                content_type.mime_type,
            )
            emit(TaskEvent.completed(TaskKind.HEURISTIC, MISMATCH_HEURISTIC))

        await self._compute(
            TaskKind.STRUCTURED_REPORT,
            emit,
            engines.parse_structured,
            artifact.data,
            content_type.mime_type or "unknown",
            secret,
        )

    async def _entropy(self, engines: AnalysisEngines, artifact: Artifact, emit: Emit) -> None:
        value = await self._compute(TaskKind.ENTROPY, emit, engines.entropy, artifact.data)
        if value is not _FAILED:
            emit(TaskEvent.completed(TaskKind.METADATA, MetadataEntry("Entropy", str(value))))

    async def _digest(self, engines: AnalysisEngines, title: str, artifact: Artifact, emit: Emit) -> None:
        try:
            value = await self._call(engines.digest, title, artifact.data)
        except Exception as exc:
            logger.warning("Digest %s failed: %s", title, _describe(exc))
            emit(TaskEvent.failed(TaskKind.METADATA, f"{title}: {_describe(exc)}"))
            return
        emit(TaskEvent.completed(TaskKind.METADATA, MetadataEntry(title, value)))

    async def _strings_then_indicators(self, engines: AnalysisEngines, artifact: Artifact, emit: Emit) -> None:
        strings = await self._compute(
            TaskKind.STRINGS, emit, engines.extract_strings, artifact.data, self.min_string_length
        )
        if strings is _FAILED:
            for kind in (TaskKind.IPS, TaskKind.URLS):
                emit(TaskEvent.failed(kind, "String extraction failed"))
            return
        extracted = tuple(strings)
        await asyncio.gather(
            self._compute(TaskKind.IPS, emit, engines.extract_ips, extracted),
            self._compute(TaskKind.URLS, emit, engines.extract_urls, extracted),
        )


def _freeze(result: Any) -> Any:
    if isinstance(result, list):
        return tuple(result)
    return result


__all__ = [
    "MISMATCH_HEURISTIC",
    "PipelineRequest",
    "TaskRunner",
    "TaskTimeout",
    "UNKNOWN_TASK",
    "declared_type_disagrees",
]
