"""Unit tests for PreviewService.

Upstream dev servers are simulated with httpx.MockTransport.
"""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from berth.config import PreviewConfig, Settings
from berth.errors import NotFoundError
from berth.managers import ContainerManager
from berth.models.container import ContainerConfig
from berth.provisioners import MinimalProvisioner
from berth.services.http import HTTPClientManager
from berth.services.preview import PreviewService
from tests.fakes import FakeDriver


@pytest.fixture
def containers(tmp_path: Path) -> ContainerManager:
    settings = Settings(container={"workdir": str(tmp_path)})
    return ContainerManager(FakeDriver(), MinimalProvisioner(), settings)


async def _service(containers: ContainerManager, handler) -> tuple[PreviewService, HTTPClientManager]:
    http = HTTPClientManager(transport=httpx.MockTransport(handler))
    await http.startup()
    return PreviewService(containers, http, PreviewConfig()), http


class TestPreview:
    @pytest.mark.asyncio
    async def test_live_page_is_proxied(self, containers):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, html="<h1>app</h1>")

        await containers.create_container(ContainerConfig(playground_id="p1"))
        service, http = await _service(containers, handler)
        try:
            result = await service.fetch("p1", "/about")
        finally:
            await http.shutdown()

        assert result.live
        assert result.html == "<h1>app</h1>"
        assert result.status_code == 200
        # App port 3000 is the first published port in FakeDriver
        assert seen == ["http://127.0.0.1:40000/about"]

    @pytest.mark.asyncio
    async def test_upstream_status_is_preserved(self, containers):
        await containers.create_container(ContainerConfig(playground_id="p1"))
        service, http = await _service(
            containers, lambda request: httpx.Response(404, text="missing")
        )
        try:
            result = await service.fetch("p1")
        finally:
            await http.shutdown()

        assert result.live
        assert result.status_code == 404

    @pytest.mark.asyncio
    async def test_unreachable_app_gives_placeholder(self, containers):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        await containers.create_container(ContainerConfig(playground_id="p1"))
        service, http = await _service(containers, handler)
        try:
            result = await service.fetch("p1")
        finally:
            await http.shutdown()

        assert not result.live
        assert result.status_code == 200
        assert "not responding" in result.html

    @pytest.mark.asyncio
    async def test_stopped_container_gives_placeholder(self, containers):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        await containers.create_container(ContainerConfig(playground_id="p1"))
        await containers.stop_container("p1")
        service, http = await _service(containers, handler)
        try:
            result = await service.fetch("p1")
        finally:
            await http.shutdown()

        assert not result.live
        assert "not running" in result.html
        assert calls == []

    @pytest.mark.asyncio
    async def test_app_port_not_published(self, containers):
        await containers.create_container(ContainerConfig(playground_id="p1", ports=[8000]))
        service, http = await _service(containers, lambda request: httpx.Response(200))
        try:
            result = await service.fetch("p1")
        finally:
            await http.shutdown()

        assert not result.live

    @pytest.mark.asyncio
    async def test_unknown_playground(self, containers):
        service, http = await _service(containers, lambda request: httpx.Response(200))
        try:
            with pytest.raises(NotFoundError):
                await service.fetch("nope")
        finally:
            await http.shutdown()


class TestHTTPClientManager:
    @pytest.mark.asyncio
    async def test_client_requires_startup(self):
        manager = HTTPClientManager()

        with pytest.raises(RuntimeError):
            _ = manager.client

        await manager.startup()
        assert manager.is_started
        await manager.shutdown()
        assert not manager.is_started
        await manager.shutdown()
