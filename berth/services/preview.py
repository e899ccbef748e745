"""PreviewService - fetch what a playground's app is serving.

Reads the playground's app port through the host binding recorded in the
container's port map. Any failure degrades to a placeholder page instead of
an error, since a dev server that is still starting is the normal case.
"""

from __future__ import annotations

from dataclasses import dataclass
from html import escape

import httpx
import structlog

from berth.config import PreviewConfig
from berth.errors import NotFoundError
from berth.managers.container import ContainerManager
from berth.services.http import HTTPClientManager

logger = structlog.get_logger()

_PLACEHOLDER = """<!DOCTYPE html>
<html>
<head><title>Preview</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h1>Preview not available</h1>
<p>{reason}</p>
<p>Start your development server on port {port} to see a live preview.</p>
</body>
</html>
"""


@dataclass
class PreviewResult:
    html: str
    status_code: int
    live: bool
    upstream: str | None = None


class PreviewService:
    def __init__(
        self,
        containers: ContainerManager,
        http: HTTPClientManager,
        config: PreviewConfig,
    ) -> None:
        self._containers = containers
        self._http = http
        self._config = config
        self._log = logger.bind(service="preview")

    def _placeholder(self, reason: str) -> PreviewResult:
        html = _PLACEHOLDER.format(reason=escape(reason), port=self._config.app_port)
        return PreviewResult(html=html, status_code=200, live=False)

    async def fetch(self, playground_id: str, path: str = "/") -> PreviewResult:
        """Fetch ``path`` from the playground's app port.

        Raises:
            NotFoundError: If the playground has no container
        """
        info = await self._containers.get_container(playground_id)
        if info is None:
            raise NotFoundError(
                f"Container not found for playground: {playground_id}",
                details={"playground_id": playground_id},
            )

        host_port = info.ports.get(self._config.app_port)
        if not info.is_running or host_port is None or not info.address:
            return self._placeholder("The playground container is not running.")

        url = f"http://{info.address}:{host_port}/{path.lstrip('/')}"
        try:
            response = await self._http.client.get(url, timeout=self._config.timeout_seconds)
        except httpx.HTTPError as e:
            self._log.debug("preview.unreachable", playground_id=playground_id, url=url, error=str(e))
            return self._placeholder("The application is not responding yet.")

        return PreviewResult(
            html=response.text,
            status_code=response.status_code,
            live=True,
            upstream=url,
        )
