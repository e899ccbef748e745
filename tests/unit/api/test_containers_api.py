"""API tests for /v1/containers.

The app is driven in-process through httpx.ASGITransport with services built
on FakeDriver. The lifespan does not run under ASGITransport, so the fixture
installs and starts the services itself.
"""

from __future__ import annotations

import base64
from pathlib import Path

import httpx
import pytest

from berth.config import Settings
from berth.main import create_app
from berth.services.http import HTTPClientManager
from berth.services.lifecycle import build_services
from berth.services.preview import PreviewService
from tests.fakes import FakeDriver


def _upstream(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, html=f"<p>served {request.url.path}</p>")


@pytest.fixture
async def api(tmp_path: Path):
    settings = Settings(
        container={"workdir": str(tmp_path)},
        admission={
            "rules": {
                "container-create": {"window_seconds": 60, "max_requests": 3},
            }
        },
    )
    driver = FakeDriver()
    services = build_services(settings, driver=driver)
    services.http = HTTPClientManager(transport=httpx.MockTransport(_upstream))
    services.preview = PreviewService(services.containers, services.http, settings.preview)
    await services.http.startup()

    app = create_app()
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://berth") as client:
        yield client, driver

    await services.terminals.close_all()
    await services.http.shutdown()


async def _create(client: httpx.AsyncClient, playground_id: str = "p1", **body):
    return await client.post("/v1/containers", json={"playground_id": playground_id, **body})


class TestLifecycleRoutes:
    @pytest.mark.asyncio
    async def test_create_and_get(self, api):
        client, _ = api

        resp = await _create(client, template="react-js", language="javascript")

        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "playground-p1"
        assert body["status"] == "running"
        assert body["ports"]["3000"] == 40000

        resp = await client.get("/v1/containers/p1")
        assert resp.status_code == 200
        assert resp.json()["id"] == body["id"]

    @pytest.mark.asyncio
    async def test_create_conflict(self, api):
        client, _ = api
        await _create(client)

        resp = await _create(client)

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("playground_id", ["", "Has_Upper", "-leading", "a" * 64])
    async def test_invalid_playground_id(self, api, playground_id):
        client, driver = api

        resp = await _create(client, playground_id)

        assert resp.status_code == 422
        assert driver.create_calls == []

    @pytest.mark.asyncio
    async def test_get_unknown(self, api):
        client, _ = api

        resp = await client.get("/v1/containers/nope")

        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "not_found"
        assert error["request_id"] == resp.headers["X-Request-Id"]

    @pytest.mark.asyncio
    async def test_stop_start_remove(self, api):
        client, driver = api
        await _create(client)

        assert (await client.post("/v1/containers/p1/stop")).status_code == 204
        assert (await client.get("/v1/containers/p1")).json()["status"] == "stopped"

        resp = await client.post("/v1/containers/p1/start")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"

        assert (await client.delete("/v1/containers/p1")).status_code == 204
        assert (await client.delete("/v1/containers/p1")).status_code == 204
        assert driver.containers == {}

    @pytest.mark.asyncio
    async def test_list(self, api):
        client, _ = api
        await _create(client, "p1")
        await _create(client, "p2")

        resp = await client.get("/v1/containers")

        assert sorted(i["name"] for i in resp.json()["items"]) == [
            "playground-p1",
            "playground-p2",
        ]

    @pytest.mark.asyncio
    async def test_create_is_rate_limited(self, api):
        client, _ = api
        for i in range(3):
            assert (await _create(client, f"p{i}")).status_code == 201

        resp = await _create(client, "p9")

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1

        # Separate identity, separate budget
        resp = await client.post(
            "/v1/containers",
            json={"playground_id": "p9"},
            headers={"X-User-Id": "someone-else"},
        )
        assert resp.status_code == 201


class TestExecRoutes:
    @pytest.mark.asyncio
    async def test_exec(self, api):
        client, _ = api
        await _create(client)

        resp = await client.post("/v1/containers/p1/exec", json={"command": "echo hi; exit 2"})

        assert resp.status_code == 200
        assert resp.json() == {"output": "hi\n", "exit_code": 2, "success": False}

    @pytest.mark.asyncio
    async def test_exec_unknown(self, api):
        client, _ = api

        resp = await client.post("/v1/containers/nope/exec", json={"command": "true"})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_exec_timeout(self, api):
        client, driver = api
        await _create(client)
        driver.exec_delay = 1.0

        resp = await client.post(
            "/v1/containers/p1/exec", json={"command": "true", "timeout": 0.05}
        )

        assert resp.status_code == 504
        assert resp.json()["error"]["code"] == "timeout"


class TestFileRoutes:
    @pytest.mark.asyncio
    async def test_write_read_and_list(self, api):
        client, _ = api
        await _create(client)

        resp = await client.put(
            "/v1/containers/p1/files/content",
            json={"path": "src/index.js", "content": "console.log('hi')\n"},
        )
        assert resp.status_code == 204

        resp = await client.get(
            "/v1/containers/p1/files/content", params={"path": "src/index.js"}
        )
        assert resp.json()["content"] == "console.log('hi')\n"

        resp = await client.get("/v1/containers/p1/files")
        names = {e["name"]: e for e in resp.json()}
        assert names["index.js"]["language"] == "javascript"

    @pytest.mark.asyncio
    async def test_binary_content(self, api):
        client, _ = api
        await _create(client)
        data = b"\x00\xff\x10binary"
        encoded = base64.b64encode(data).decode()

        resp = await client.put(
            "/v1/containers/p1/files/content",
            json={"path": "blob.bin", "content": encoded, "encoding": "base64"},
        )
        assert resp.status_code == 204

        resp = await client.get(
            "/v1/containers/p1/files/content",
            params={"path": "blob.bin", "encoding": "base64"},
        )
        assert base64.b64decode(resp.json()["content"]) == data

    @pytest.mark.asyncio
    async def test_invalid_base64(self, api):
        client, _ = api
        await _create(client)

        resp = await client.put(
            "/v1/containers/p1/files/content",
            json={"path": "x.bin", "content": "not base64!", "encoding": "base64"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_path_escape(self, api):
        client, _ = api
        await _create(client)

        resp = await client.get(
            "/v1/containers/p1/files/content", params={"path": "/etc/passwd"}
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_path"

    @pytest.mark.asyncio
    async def test_missing_file(self, api):
        client, _ = api
        await _create(client)

        resp = await client.get(
            "/v1/containers/p1/files/content", params={"path": "nope.txt"}
        )

        assert resp.status_code == 404


class TestPreviewRoute:
    @pytest.mark.asyncio
    async def test_live_preview(self, api):
        client, _ = api
        await _create(client)

        resp = await client.get("/v1/containers/p1/preview", params={"path": "/docs"})

        assert resp.status_code == 200
        assert resp.headers["X-Preview-Live"] == "true"
        assert "served /docs" in resp.text

    @pytest.mark.asyncio
    async def test_stopped_preview_placeholder(self, api):
        client, _ = api
        await _create(client)
        await client.post("/v1/containers/p1/stop")

        resp = await client.get("/v1/containers/p1/preview")

        assert resp.status_code == 200
        assert resp.headers["X-Preview-Live"] == "false"
        assert "Preview not available" in resp.text


class TestMiscRoutes:
    @pytest.mark.asyncio
    async def test_health(self, api):
        client, _ = api

        resp = await client.get("/health")

        assert resp.json() == {"status": "ok"}
        assert resp.headers["X-Request-Id"]

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, api):
        client, _ = api

        resp = await client.get("/health", headers={"X-Request-Id": "req-123"})

        assert resp.headers["X-Request-Id"] == "req-123"

    @pytest.mark.asyncio
    async def test_admin_gc_run(self, api):
        client, _ = api

        resp = await client.post("/v1/admin/gc/run")

        assert resp.status_code == 200
        body = resp.json()
        assert [r["task_name"] for r in body["results"]] == [
            "idle_terminal",
            "rate_limit_sweep",
        ]
        assert body["total_errors"] == 0
