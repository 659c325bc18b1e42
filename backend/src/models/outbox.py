"""Outbox model for jobs staged inside a database transaction."""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, UTCDateTime, utcnow


class OutboxJob(Base):
    """
    A queue job written in the same transaction as the change that caused it.

    Rows are relayed to the job queue after commit and deleted once enqueued,
    so a crash between commit and enqueue delays a job instead of losing it.
    """

    __tablename__ = "job_outbox"

    # BigInteger on PostgreSQL, INTEGER on SQLite so it stays an autoincrement rowid
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    topic: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
