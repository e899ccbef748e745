"""Terminal session API endpoints.

Sessions are created under ``/containers/{playground_id}/terminal``; this
router addresses them by session id.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel

from berth.api.dependencies import TerminalManagerDep
from berth.errors import NotFoundError
from berth.models.terminal import TerminalSession

router = APIRouter()


class TerminalSessionResponse(BaseModel):
    id: str
    playground_id: str
    state: str
    active: bool
    cols: int
    rows: int
    created_at: datetime
    last_activity: datetime


class InputRequest(BaseModel):
    data: str


class ResizeRequest(BaseModel):
    # Positivity is checked by the manager so the error shape matches other callers
    cols: int
    rows: int


class OutputResponse(BaseModel):
    data: str
    active: bool


def session_to_response(session: TerminalSession) -> TerminalSessionResponse:
    return TerminalSessionResponse(
        id=session.id,
        playground_id=session.playground_id,
        state=session.state.value,
        active=session.is_active,
        cols=session.cols,
        rows=session.rows,
        created_at=session.created_at,
        last_activity=session.last_activity,
    )


@router.get("/{session_id}", response_model=TerminalSessionResponse)
async def get_terminal_session(
    session_id: str,
    terminals: TerminalManagerDep,
) -> TerminalSessionResponse:
    session = terminals.get_session(session_id)
    if session is None:
        raise NotFoundError(
            f"Terminal session not found: {session_id}",
            details={"session_id": session_id},
        )
    return session_to_response(session)


@router.post("/{session_id}/input", status_code=204)
async def write_to_session(
    session_id: str,
    request: InputRequest,
    terminals: TerminalManagerDep,
) -> Response:
    await terminals.write_to_session(session_id, request.data.encode())
    return Response(status_code=204)


@router.post("/{session_id}/resize", status_code=204)
async def resize_session(
    session_id: str,
    request: ResizeRequest,
    terminals: TerminalManagerDep,
) -> Response:
    await terminals.resize_session(session_id, request.cols, request.rows)
    return Response(status_code=204)


@router.get("/{session_id}/output", response_model=OutputResponse)
async def read_output(
    session_id: str,
    terminals: TerminalManagerDep,
    timeout: Annotated[float, Query(ge=0, le=30)] = 1.0,
) -> OutputResponse:
    data = await terminals.read_output(session_id, timeout=timeout)
    session = terminals.get_session(session_id)
    return OutputResponse(
        data=data.decode("utf-8", errors="replace"),
        active=session is not None and session.is_active,
    )


@router.delete("/{session_id}", status_code=204)
async def close_session(
    session_id: str,
    terminals: TerminalManagerDep,
) -> Response:
    await terminals.close_session(session_id)
    return Response(status_code=204)
