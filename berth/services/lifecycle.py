"""Service container for FastAPI lifespan integration.

Everything stateful (driver, managers, admission guard, janitor) is built
here once per application and reached through ``app.state.services``.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from berth.config import Settings
from berth.drivers import Driver, create_driver
from berth.managers import ContainerManager, TerminalManager
from berth.provisioners import create_provisioner
from berth.services.gc import GCScheduler
from berth.services.gc.tasks import IdleTerminalGC, RateLimitSweepGC
from berth.services.http import HTTPClientManager
from berth.services.preview import PreviewService
from berth.services.ratelimit import AdmissionGuard
from berth.terminals import create_terminal_backend

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    driver: Driver
    containers: ContainerManager
    terminals: TerminalManager
    admission: AdmissionGuard
    http: HTTPClientManager
    preview: PreviewService
    janitor: GCScheduler
    sweeper: GCScheduler


def build_services(settings: Settings, *, driver: Driver | None = None) -> Services:
    """Wire every service from settings. Nothing is started yet."""
    driver = driver or create_driver(settings.driver)
    provisioner = create_provisioner(settings.provisioner, workdir=settings.container.workdir)

    containers = ContainerManager(driver, provisioner, settings)
    terminals = TerminalManager(
        containers,
        create_terminal_backend(settings.terminal.backend, driver),
        settings,
    )
    admission = AdmissionGuard(settings.admission)
    http = HTTPClientManager(timeout=settings.preview.timeout_seconds)

    return Services(
        settings=settings,
        driver=driver,
        containers=containers,
        terminals=terminals,
        admission=admission,
        http=http,
        preview=PreviewService(containers, http, settings.preview),
        janitor=GCScheduler(
            [IdleTerminalGC(terminals)],
            interval_seconds=settings.janitor.interval_seconds,
            name="janitor",
        ),
        sweeper=GCScheduler(
            [RateLimitSweepGC(admission)],
            interval_seconds=settings.admission.interval_seconds,
            name="ratelimit_sweeper",
        ),
    )


async def start_services(services: Services) -> None:
    """Start background work.

    The janitor scheduler always exists (the admin API can trigger it), but
    its loop only runs when ``janitor.enabled``.
    """
    settings = services.settings
    await services.http.startup()

    logger.info(
        "janitor.init",
        enabled=settings.janitor.enabled,
        interval_seconds=settings.janitor.interval_seconds,
        run_on_startup=settings.janitor.run_on_startup,
    )
    if settings.janitor.enabled:
        if settings.janitor.run_on_startup:
            try:
                results = await services.janitor.run_once()
                logger.info(
                    "janitor.run_on_startup.complete",
                    cleaned=sum(r.cleaned_count for r in results),
                )
            except Exception as e:
                logger.exception("janitor.run_on_startup.failed", error=str(e))
        await services.janitor.start()

    if settings.admission.enabled:
        await services.sweeper.start()


async def shutdown_services(services: Services) -> None:
    """Stop background work, close sessions and release clients."""
    await services.janitor.stop()
    await services.sweeper.stop()
    await services.terminals.close_all()
    await services.http.shutdown()
    await services.driver.close()
