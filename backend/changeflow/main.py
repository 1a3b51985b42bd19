"""
Changeflow service - main entry point.

Starts one TenantWorker per configured tenant plus the operational
HTTP server, and runs until SIGTERM or SIGINT.

Usage:
    python -m backend.changeflow.main

Configuration is entirely via environment variables plus the tenant
mapping file named by TENANTS_FILE. See config.py.

Invariants:
    - Every tenant worker has its own queue client and processor
    - Collaborators that are disabled in configuration are None, and
      the dispatcher skips their side effects
    - Shutdown cancels workers before closing the clients they use

How to change safely:
    - Add new collaborators with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from typing import Any

import json_log_formatter

from .api.http_server import run_http_server
from .config import ServerConfig
from .engine import (
    ExecutionSummary,
    StatusDispatcher,
    TenantProcessor,
    TenantWorker,
    TriggerReconciler,
)
from .events.origin import EngineIdentity, EventOriginFilter
from .integrations.aws import TenantCredentialProvider
from .integrations.graph import GraphCalendarClient
from .integrations.meetings import MeetingSchedulerAdapter
from .integrations.notifier import Notifier, RecipientDirectory
from .integrations.ses import SesNotifier, SesRecipientDirectory
from .integrations.surveys import SurveyClient, TypeformSurveyClient
from .keys import KeyLayout
from .queue.base import TenantQueue
from .queue.sqs import SqsTenantQueue
from .store.archive import ArchiveRepository
from .store.base import ObjectStore, create_object_store
from .tenants import TenantContext, TenantRegistry

logger = logging.getLogger(__name__)

QueueFactory = Callable[[TenantContext], TenantQueue]


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Changeflow service orchestrator.

    Manages the lifecycle of all components:
    - Object store (archive and triggers)
    - Email, calendar and survey collaborators
    - One worker per tenant queue
    - Operational HTTP server

    Collaborators can be injected, which is how tests and local runs
    swap in the in-memory implementations.

    Example:
        >>> server = Server(config, registry)
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        registry: TenantRegistry | None = None,
        store: ObjectStore | None = None,
        queue_factory: QueueFactory | None = None,
        notifier: Notifier | None = None,
        directory: RecipientDirectory | None = None,
        meetings: MeetingSchedulerAdapter | None = None,
        surveys: SurveyClient | None = None,
    ) -> None:
        self.config = config or ServerConfig.from_env()
        self.registry = registry
        self.store = store
        self.queue_factory = queue_factory
        self.notifier = notifier
        self.directory = directory
        self.meetings = meetings
        self.surveys = surveys
        self.layout = KeyLayout(
            trigger_prefix=self.config.s3.trigger_prefix,
            archive_prefix=self.config.s3.archive_prefix,
        )
        self.archive: ArchiveRepository | None = None
        self.workers: dict[str, TenantWorker] = {}

        self._running = False
        self._opened = False
        self._shutdown_event = asyncio.Event()
        self._owned: list[Any] = []
        self._tasks: list[asyncio.Task] = []

    async def open(self) -> None:
        """Connect the store and build shared collaborators."""
        if self._opened:
            return
        engine = self.config.engine
        timeout = engine.call_timeout_seconds

        if self.registry is None:
            self.registry = TenantRegistry.from_file(self.config.tenants_file)

        if self.store is None:
            self.store = create_object_store(self.config.s3, timeout)
            self._owned.append(self.store)
        await self.store.connect()

        self.archive = ArchiveRepository(
            self.store,
            self.layout,
            max_attempts=engine.archive_update_attempts,
            base_delay=engine.retry_base_delay_ms / 1000,
            max_delay=engine.retry_max_delay_ms / 1000,
        )

        credentials: TenantCredentialProvider | None = None
        if self.directory is None and (self.config.email.enabled or self.config.calendar.enabled):
            credentials = TenantCredentialProvider(call_timeout=timeout)
            self.directory = SesRecipientDirectory(credentials, timeout)

        if self.notifier is None and self.config.email.enabled and self.directory is not None:
            self.notifier = SesNotifier(
                self.config.email,
                self.directory,
                credentials or TenantCredentialProvider(call_timeout=timeout),
                call_timeout=timeout,
            )

        if self.meetings is None and self.config.calendar.enabled:
            calendar = GraphCalendarClient(self.config.calendar, timeout)
            self._owned.append(calendar)
            self.meetings = MeetingSchedulerAdapter(
                calendar, self.directory, self.config.calendar.lookback_days
            )

        if self.surveys is None and self.config.survey.enabled:
            survey_client = TypeformSurveyClient(self.config.survey, timeout)
            self._owned.append(survey_client)
            self.surveys = survey_client

        self._opened = True
        logger.info(
            "Collaborators ready",
            extra={
                "tenants": len(self.registry),
                "email": self.notifier is not None,
                "calendar": self.meetings is not None,
                "surveys": self.surveys is not None,
            },
        )

    def build_processor(self, tenant: TenantContext) -> TenantProcessor:
        """Wire the pipeline for one tenant. Requires open()."""
        if self.store is None or self.archive is None:
            raise RuntimeError("Server collaborators not opened")
        engine = self.config.engine
        summary = ExecutionSummary(tenant.tenant_code)
        identity = EngineIdentity(role_arn=engine.role_arn, principal_ids=engine.principal_ids)
        dispatcher = StatusDispatcher(
            notifier=self.notifier,
            meetings=self.meetings,
            surveys=self.surveys,
            actor_id=engine.actor_id,
            operation_timeout=engine.call_timeout_seconds * 3,
            default_meeting_minutes=self.config.calendar.default_duration_minutes,
            summary=summary,
        )
        return TenantProcessor(
            tenant=tenant,
            origin_filter=EventOriginFilter(identity),
            reconciler=TriggerReconciler(
                self.store, self.archive, self.layout, engine.call_timeout_seconds
            ),
            dispatcher=dispatcher,
            archive=self.archive,
            layout=self.layout,
            actor_id=engine.actor_id,
            summary=summary,
        )

    def _create_queue(self, tenant: TenantContext) -> TenantQueue:
        if self.queue_factory is not None:
            return self.queue_factory(tenant)
        return SqsTenantQueue(
            tenant.tenant_code,
            tenant.queue_url,
            tenant.region,
            self.config.queue,
            self.config.engine.call_timeout_seconds,
        )

    async def start(self) -> None:
        """Start all components and run until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting changeflow server")
        self.config.log_config()

        try:
            await self.open()
            if self.registry is None:
                raise RuntimeError("Tenant registry not loaded")
            engine = self.config.engine
            for tenant in self.registry:
                queue = self._create_queue(tenant)
                await queue.connect()
                worker = TenantWorker(
                    queue,
                    self.build_processor(tenant),
                    self.config.queue,
                    retry_base_delay=engine.retry_base_delay_ms / 1000,
                    retry_max_delay=engine.retry_max_delay_ms / 1000,
                )
                self.workers[tenant.tenant_code] = worker
                self._tasks.append(asyncio.create_task(worker.start()))

            if self.config.http.enabled:
                self._tasks.append(
                    asyncio.create_task(
                        run_http_server(self, self.config.http.host, self.config.http.port)
                    )
                )

            self._running = True
            logger.info("Changeflow server started", extra={"tenants": self.registry.codes()})

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and not self._opened:
            return

        logger.info("Stopping changeflow server")

        for worker in self.workers.values():
            await worker.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for worker in self.workers.values():
            await worker.queue.close()

        await self.close()
        self._running = False
        logger.info("Changeflow server stopped")

    async def close(self) -> None:
        """Close clients opened by open()."""
        for client in self._owned:
            await client.close()
        self._owned = []
        self._opened = False

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    def health(self) -> dict[str, Any]:
        workers = {code: w.stats["running"] for code, w in self.workers.items()}
        healthy = self._running and bool(workers) and all(workers.values())
        return {"healthy": healthy, "workers": workers}

    def stats(self) -> dict[str, dict[str, Any]]:
        return {code: w.stats for code, w in self.workers.items()}


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
