"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Only the collaborator state this package owns lives here: transaction
locks and attach records. The order ledger belongs to the host application.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class TransactionLock(Base):
    """
    ORM model for transaction_locks table.

    A row exists while some worker reconciles the transaction. The primary
    key makes a second insert for the same trade number fail, which is how
    contention is detected.
    """

    __tablename__ = "transaction_locks"

    trade_no: Mapped[str] = mapped_column(String(128), primary_key=True)
    locked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_transaction_locks_locked_at", "locked_at"),)


class TransactionAttachment(Base):
    """
    ORM model for transaction_attachments table.

    Holds the caller passthrough payload between the start of a receipt
    verification and the creation of the order that embeds it.
    """

    __tablename__ = "transaction_attachments"

    trade_no: Mapped[str] = mapped_column(String(128), primary_key=True)
    attach: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
