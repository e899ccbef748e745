"""Playground container API endpoints."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from berth.api.dependencies import (
    ContainerManagerDep,
    PreviewServiceDep,
    TerminalManagerDep,
    require_admission,
)
from berth.api.v1.terminals import TerminalSessionResponse, session_to_response
from berth.drivers.base import ContainerInfo
from berth.errors import NotFoundError, ValidationError
from berth.models.container import ContainerConfig, FileEntry

router = APIRouter()


# Request/Response Models


class ContainerResponse(BaseModel):
    """Observed container state."""

    id: str
    name: str
    status: str
    # container port -> host port
    ports: dict[int, int]
    address: str | None
    created_at: datetime | None


class ContainerListResponse(BaseModel):
    items: list[ContainerResponse]


class ExecRequest(BaseModel):
    command: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)


class ExecResponse(BaseModel):
    output: str
    exit_code: int
    success: bool


class FileContentResponse(BaseModel):
    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"


class WriteFileRequest(BaseModel):
    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"


def _to_response(info: ContainerInfo) -> ContainerResponse:
    return ContainerResponse(
        id=info.container_id,
        name=info.name,
        status=info.status.value,
        ports=info.ports,
        address=info.address,
        created_at=info.created_at,
    )


# Endpoints


@router.post(
    "",
    response_model=ContainerResponse,
    status_code=201,
    dependencies=[Depends(require_admission("container-create"))],
)
async def create_container(
    config: ContainerConfig,
    containers: ContainerManagerDep,
) -> ContainerResponse:
    info = await containers.create_container(config)
    return _to_response(info)


@router.get("", response_model=ContainerListResponse)
async def list_containers(containers: ContainerManagerDep) -> ContainerListResponse:
    items = await containers.list_containers()
    return ContainerListResponse(items=[_to_response(i) for i in items])


@router.get("/{playground_id}", response_model=ContainerResponse)
async def get_container(
    playground_id: str,
    containers: ContainerManagerDep,
) -> ContainerResponse:
    info = await containers.get_container(playground_id)
    if info is None:
        raise NotFoundError(
            f"Container not found for playground: {playground_id}",
            details={"playground_id": playground_id},
        )
    return _to_response(info)


@router.post("/{playground_id}/start", response_model=ContainerResponse)
async def start_container(
    playground_id: str,
    containers: ContainerManagerDep,
) -> ContainerResponse:
    info = await containers.start_container(playground_id)
    return _to_response(info)


@router.post("/{playground_id}/stop", status_code=204)
async def stop_container(
    playground_id: str,
    containers: ContainerManagerDep,
    terminals: TerminalManagerDep,
) -> Response:
    await containers.stop_container(playground_id)
    # A stopped container cannot host a shell
    await terminals.close_playground_sessions(playground_id)
    return Response(status_code=204)


@router.delete("/{playground_id}", status_code=204)
async def remove_container(
    playground_id: str,
    containers: ContainerManagerDep,
) -> Response:
    # Also closes the playground's terminal session
    await containers.remove_container(playground_id)
    return Response(status_code=204)


@router.post(
    "/{playground_id}/exec",
    response_model=ExecResponse,
    dependencies=[Depends(require_admission("container-exec"))],
)
async def execute_command(
    playground_id: str,
    request: ExecRequest,
    containers: ContainerManagerDep,
) -> ExecResponse:
    result = await containers.execute_command(
        playground_id, request.command, timeout=request.timeout
    )
    return ExecResponse(
        output=result.output,
        exit_code=result.exit_code,
        success=result.success,
    )


@router.get("/{playground_id}/files", response_model=list[FileEntry])
async def get_container_files(
    playground_id: str,
    containers: ContainerManagerDep,
    path: Annotated[str | None, Query()] = None,
) -> list[FileEntry]:
    return await containers.get_container_files(playground_id, path)


@router.get("/{playground_id}/files/content", response_model=FileContentResponse)
async def read_file(
    playground_id: str,
    containers: ContainerManagerDep,
    path: Annotated[str, Query(min_length=1)],
    encoding: Annotated[Literal["utf-8", "base64"], Query()] = "utf-8",
) -> FileContentResponse:
    if encoding == "base64":
        data = await containers.read_bytes(playground_id, path)
        content = base64.b64encode(data).decode()
    else:
        content = await containers.read_file(playground_id, path)
    return FileContentResponse(path=path, content=content, encoding=encoding)


@router.put("/{playground_id}/files/content", status_code=204)
async def write_file(
    playground_id: str,
    request: WriteFileRequest,
    containers: ContainerManagerDep,
) -> Response:
    if request.encoding == "base64":
        try:
            data = base64.b64decode(request.content, validate=True)
        except binascii.Error as e:
            raise ValidationError(
                "content is not valid base64",
                details={"field": "content"},
            ) from e
        await containers.write_bytes(playground_id, request.path, data)
    else:
        await containers.write_file(playground_id, request.path, request.content)
    return Response(status_code=204)


@router.get("/{playground_id}/preview", response_class=HTMLResponse)
async def preview(
    playground_id: str,
    preview_service: PreviewServiceDep,
    path: Annotated[str, Query()] = "/",
) -> HTMLResponse:
    result = await preview_service.fetch(playground_id, path)
    return HTMLResponse(
        content=result.html,
        status_code=result.status_code,
        headers={"X-Preview-Live": "true" if result.live else "false"},
    )


@router.post(
    "/{playground_id}/terminal",
    response_model=TerminalSessionResponse,
    status_code=201,
    dependencies=[Depends(require_admission("terminal-create"))],
)
async def create_terminal_session(
    playground_id: str,
    terminals: TerminalManagerDep,
) -> TerminalSessionResponse:
    session = await terminals.create_session(playground_id)
    return session_to_response(session)
