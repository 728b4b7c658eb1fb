"""FastAPI application entrypoint for infectio service mode."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from ..config import InfectioConfig
from ..logging import get_logger
from ..models import Artifact, Session
from ..sessions import MemberScanError, SessionError, SessionManager

logger = get_logger("service")


class HealthResponse(BaseModel):
    status: str


class SessionSummary(BaseModel):
    id: str
    name: str
    size: int
    declared_type: Optional[str] = None
    depth: int = 0
    parent_id: Optional[str] = None
    completion: str
    needs_secret: bool = False
    selected: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary]
    selected: Optional[str] = None


class ReportResponse(BaseModel):
    session: SessionSummary
    report: Dict[str, Any]


class RetryRequest(BaseModel):
    secret: str
    wait: bool = False


class MemberRequest(BaseModel):
    path: str
    wait: bool = False


class EntropyPreviewResponse(BaseModel):
    path: str
    chunks: List[float]


def _summary(manager: SessionManager, session: Session) -> SessionSummary:
    selected = manager.selected
    return SessionSummary(
        id=session.id,
        name=session.display_name,
        size=session.artifact.size,
        declared_type=session.artifact.declared_type or None,
        depth=session.depth,
        parent_id=session.parent_id,
        completion=manager.completion_state(session.id).value,
        needs_secret=session.report.needs_secret,
        selected=selected is not None and selected.id == session.id,
    )


def create_app(manager_factory: Callable[[], SessionManager] = SessionManager) -> FastAPI:
    """Create the FastAPI application exposing session operations.

    Pipeline runs are tasks on the server's event loop; pass ``wait`` to
    block a request until the run it started has finished.
    """

    app = FastAPI(title="Infectio Service", version="1.0.0")
    app.state.manager = manager_factory()

    async def get_manager() -> SessionManager:
        return app.state.manager

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.post("/sessions", response_model=SessionSummary, status_code=201)
    async def open_session(
        request: Request,
        name: str = "upload.bin",
        declared_type: Optional[str] = None,
        wait: bool = False,
        manager: SessionManager = Depends(get_manager),
    ) -> SessionSummary:
        body = await request.body()
        session_id = manager.open(Artifact.create(name, body, declared_type))
        if wait:
            await manager.wait(session_id)
        return _summary(manager, manager.get(session_id))

    @app.get("/sessions", response_model=SessionListResponse)
    async def list_sessions(manager: SessionManager = Depends(get_manager)) -> SessionListResponse:
        selected = manager.selected
        return SessionListResponse(
            sessions=[_summary(manager, session) for session in manager.sessions],
            selected=selected.id if selected is not None else None,
        )

    @app.get("/sessions/{session_id}", response_model=ReportResponse)
    async def read_report(session_id: str, manager: SessionManager = Depends(get_manager)) -> ReportResponse:
        session = manager.get(session_id)
        return ReportResponse(session=_summary(manager, session), report=session.report.to_dict())

    @app.delete("/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str, manager: SessionManager = Depends(get_manager)) -> Response:
        manager.close(session_id)
        return Response(status_code=204)

    @app.post("/sessions/{session_id}/select", response_model=SessionSummary)
    async def select_session(session_id: str, manager: SessionManager = Depends(get_manager)) -> SessionSummary:
        return _summary(manager, manager.select(session_id))

    @app.post("/sessions/{session_id}/retry", response_model=SessionSummary)
    async def retry_session(
        session_id: str,
        payload: RetryRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> SessionSummary:
        manager.retry_with_secret(session_id, payload.secret)
        if payload.wait:
            await manager.wait(session_id)
        return _summary(manager, manager.get(session_id))

    @app.post("/sessions/{session_id}/members", response_model=SessionSummary, status_code=201)
    async def scan_member(
        session_id: str,
        payload: MemberRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> SessionSummary:
        item = manager.find_member(session_id, payload.path)
        member_id = manager.scan_member(session_id, item)
        if payload.wait:
            await manager.wait(member_id)
        return _summary(manager, manager.get(member_id))

    @app.post("/sessions/{session_id}/members/entropy", response_model=EntropyPreviewResponse)
    async def preview_member_entropy(
        session_id: str,
        payload: MemberRequest,
        manager: SessionManager = Depends(get_manager),
    ) -> EntropyPreviewResponse:
        item = manager.find_member(session_id, payload.path)
        chunks = await manager.preview_entropy(item)
        return EntropyPreviewResponse(path=item.path, chunks=chunks)

    @app.exception_handler(SessionError)
    async def session_error_handler(_: Any, exc: SessionError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(MemberScanError)
    async def member_error_handler(_: Any, exc: MemberScanError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


def run_service(
    config: Optional[InfectioConfig] = None, host: str = "127.0.0.1", port: int = 8000
) -> None:  # pragma: no cover - integration path
    logger.info("Serving on %s:%d", host, port)
    app = create_app(lambda: SessionManager(config=config))
    uvicorn.run(app, host=host, port=port)
