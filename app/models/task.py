from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONType, utcnow


class TaskStatus:
    EXECUTING = "executing"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    STOPPED = "stopped"


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    # order id or user id depending on the action
    subject_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)

    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # not-before; a claimed task is pushed forward by the worker lease
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_execute_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TaskStatus.EXECUTING)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


Index("ix_tasks_due", Task.status, Task.started_at)
Index("ix_tasks_subject_action", Task.subject_id, Task.action)
Index(
    "uq_tasks_executing_subject_action",
    Task.subject_id,
    Task.action,
    unique=True,
    postgresql_where=text("status = 'executing'"),
    sqlite_where=text("status = 'executing'"),
)
