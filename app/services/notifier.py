from __future__ import annotations

import asyncio
import json
import smtplib
from dataclasses import asdict, dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Optional, Protocol

from loguru import logger

from app.core.config import Settings


@dataclass
class FailureNotice:
    order_id: int
    task_id: int
    action: str
    status: str
    attempts: int
    result: Any
    created_at: Optional[datetime]
    executed_at: Optional[datetime]


class Notifier(Protocol):
    async def send_failure_notice(self, notice: FailureNotice) -> None: ...


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def render_failure_notice(notice: FailureNotice) -> str:
    result = notice.result if isinstance(notice.result, dict) else {"data": notice.result}
    data = result.get("data")
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False, default=str)

    lines = [
        f"Error:       {result.get('msg') or '-'}",
        f"Task ID:     {notice.task_id}",
        f"Subject ID:  {notice.order_id}",
        f"Action:      {notice.action}",
        f"Attempts:    {notice.attempts}",
        f"Status:      {notice.status}",
        f"Created at:  {_fmt(notice.created_at)}",
        f"Executed at: {_fmt(notice.executed_at)}",
        "",
        f"Code: {result.get('code')}",
        f"Data: {data}",
    ]
    return "\n".join(lines)


class SmtpNotifier:
    """Mails the operator when a task gives up after its last retry."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_message(self, notice: FailureNotice) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = f"{self.settings.APP_NAME} task queue error: {notice.action} #{notice.order_id}"
        msg["From"] = self.settings.SMTP_FROM
        msg["To"] = self.settings.ADMIN_EMAIL
        msg.set_content(render_failure_notice(notice))
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        s = self.settings
        with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=30) as smtp:
            if s.SMTP_STARTTLS:
                smtp.starttls()
            if s.SMTP_USER:
                smtp.login(s.SMTP_USER, s.SMTP_PASSWORD)
            smtp.send_message(msg)

    async def send_failure_notice(self, notice: FailureNotice) -> None:
        if not self.settings.ADMIN_EMAIL:
            logger.warning("ADMIN_EMAIL not set, failure notice dropped: {}", asdict(notice))
            return
        await asyncio.to_thread(self._deliver, self.build_message(notice))
        logger.info("failure notice for task {} sent to {}", notice.task_id, self.settings.ADMIN_EMAIL)
