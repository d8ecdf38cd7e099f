"""
Scheduled domain-validation poller.

Runs once a minute. Orders waiting on domain validation are checked on an
escalating schedule measured from when the order first entered polling, and
dropped once ``VALIDATION_MAX_HOURS`` full hours have passed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.db import utcnow
from app.models.cert import Cert, CertStatus
from app.models.order import Order
from app.models.validation import DomainValidationRecord
from app.services.dcv import is_verifiable_method
from app.services.tasks import TaskQueue
from app.services.verify_client import DnsVerifyClient


# minutes after the record was created
TIME_NODES = (3, 6, 10, 20, 30, 45, 60, 120, 180, 240, 360, 540, 720, 1080, 1440, 1800, 2160, 2520, 2880)


def get_next_time_node(elapsed_minutes: int) -> Optional[int]:
    for node in TIME_NODES:
        if node > elapsed_minutes:
            return node
    return None


class ValidationPoller:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: TaskQueue,
        verify_client: DnsVerifyClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.verify_client = verify_client
        self.settings = settings

    async def _candidates(self, db: AsyncSession) -> list[int]:
        res = await db.execute(
            select(Order.id, Cert.dcv)
            .join(Cert, Cert.id == Order.latest_cert_id)
            .where(Cert.status.in_(CertStatus.IN_FLIGHT))
            .order_by(Order.id)
        )
        return [order_id for order_id, dcv in res.all() if dcv is not None and dcv.method]

    async def _record(self, db: AsyncSession, order_id: int, now: datetime) -> DomainValidationRecord:
        res = await db.execute(select(DomainValidationRecord).where(DomainValidationRecord.order_id == order_id))
        record = res.scalar_one_or_none()
        if record is None:
            record = DomainValidationRecord(
                order_id=order_id,
                created_at=now,
                last_check_at=now,
                next_check_at=now + timedelta(minutes=1),
            )
            db.add(record)
            await db.flush()
        return record

    async def check(self, db: AsyncSession, order: Order, cert: Cert, now: datetime) -> str:
        record = await self._record(db, order.id, now)

        elapsed = now - record.created_at
        if elapsed >= timedelta(hours=self.settings.VALIDATION_MAX_HOURS):
            return "expired"
        if record.next_check_at > now:
            return "waiting"

        if cert.status == CertStatus.PROCESSING and is_verifiable_method(cert.dcv.method):
            outcome = await self.verify_client.verify(cert.validation or [])
            if outcome.passed is False:
                logger.info("order {}: records not in place yet: {}", order.id, outcome.msg)
                action = None
            else:
                # unknown means the helper is down; let the CA decide
                action = "revalidate"
        else:
            action = "sync"

        node = get_next_time_node(int(elapsed.total_seconds() // 60))
        if node is not None:
            record.last_check_at = now
            record.next_check_at = record.created_at + timedelta(minutes=node)
        return action or "checked"

    async def run_once(self, now: Optional[datetime] = None) -> dict[int, str]:
        """One sweep over every order in validation; returns order id -> what happened."""
        now = now or utcnow()
        outcomes: dict[int, str] = {}

        async with self.session_factory() as db:
            order_ids = await self._candidates(db)
        logger.info("validation poller: {} order(s) in validation", len(order_ids))

        for order_id in order_ids:
            async with self.session_factory() as db:
                try:
                    order = await db.get(Order, order_id)
                    cert = await db.get(Cert, order.latest_cert_id) if order else None
                    if cert is None:
                        continue
                    user_id = order.user_id
                    outcome = await self.check(db, order, cert, now)
                    await db.commit()
                    if outcome in ("revalidate", "sync"):
                        await self.queue.create_task(order_id, outcome, user_id=user_id)
                    outcomes[order_id] = outcome
                except Exception:
                    await db.rollback()
                    logger.exception("validation poller: order {} failed", order_id)
                    outcomes[order_id] = "error"

        return outcomes
