"""Wires the services together once per process (API or worker)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.store import CounterStore, RedisCounterStore
from app.integrations.vendors import VendorRegistry, build_registry
from app.integrations.vendors.base import AuditLog, DatabaseAuditLog
from app.services.notifier import Notifier, SmtpNotifier
from app.services.orchestrator import Orchestrator
from app.services.poller import ValidationPoller
from app.services.tasks import TaskQueue, TaskRunner, WorkerPool
from app.services.verify_client import DnsVerifyClient


@dataclass
class Services:
    store: CounterStore
    registry: VendorRegistry
    queue: TaskQueue
    orchestrator: Orchestrator
    runner: TaskRunner
    poller: ValidationPoller

    def worker_pool(self, settings: Settings) -> WorkerPool:
        return WorkerPool(self.runner, workers=settings.TASK_WORKERS, poll_interval=settings.TASK_POLL_INTERVAL)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    store: Optional[CounterStore] = None,
    audit: Optional[AuditLog] = None,
    notifier: Optional[Notifier] = None,
    source: str = "api",
) -> Services:
    store = store or RedisCounterStore.from_url(settings.REDIS_URL)
    registry = build_registry(settings, audit or DatabaseAuditLog(session_factory), store)
    verify_client = DnsVerifyClient(settings.dns_tools_urls, timeout=settings.DNS_TOOLS_TIMEOUT)

    queue = TaskQueue(session_factory, settings, source=source)
    orchestrator = Orchestrator(session_factory, registry, queue, settings, store, verify_client)
    runner = TaskRunner(session_factory, orchestrator.dispatch, notifier or SmtpNotifier(settings), settings)
    poller = ValidationPoller(session_factory, queue, verify_client, settings)

    return Services(
        store=store,
        registry=registry,
        queue=queue,
        orchestrator=orchestrator,
        runner=runner,
        poller=poller,
    )
