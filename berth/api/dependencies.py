"""FastAPI dependencies for Berth API.

Services are built once in the lifespan and stored on ``app.state``; these
helpers hand them to route handlers.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from berth.managers import ContainerManager, TerminalManager
from berth.services.lifecycle import Services
from berth.services.preview import PreviewService


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


def get_container_manager(services: ServicesDep) -> ContainerManager:
    return services.containers


def get_terminal_manager(services: ServicesDep) -> TerminalManager:
    return services.terminals


def get_preview_service(services: ServicesDep) -> PreviewService:
    return services.preview


def resolve_identity(request: Request) -> str:
    """Identify the caller for rate limiting.

    Order: ``X-User-Id`` header, first ``X-Forwarded-For`` address,
    ``X-Real-IP``, the socket peer, then ``"unknown"``.
    """
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return user_id

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def require_admission(operation: str):
    """Factory for an admission check dependency.

    Raises:
        RateLimitError: When the caller is over the operation's limit
    """

    def dependency(request: Request, services: ServicesDep) -> str:
        identity = resolve_identity(request)
        services.admission.check(operation, identity)
        return identity

    return dependency


ContainerManagerDep = Annotated[ContainerManager, Depends(get_container_manager)]
TerminalManagerDep = Annotated[TerminalManager, Depends(get_terminal_manager)]
PreviewServiceDep = Annotated[PreviewService, Depends(get_preview_service)]
