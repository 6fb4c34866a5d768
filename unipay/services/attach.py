"""
Attach Stores - Keep caller passthrough payloads across verification retries.

A client-initiated purchase carries an opaque ``attach`` payload that
the ledger embeds in the order. The payload is saved before the receipt
is verified, so a verification that has to be repeated later (after a
crash, or by a server notification) can still recover it.
"""

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from unipay.config import Settings
from unipay.db.models import TransactionAttachment, utc_now
from unipay.models.order import AttachRecord
from unipay.services.protocols import AttachService, NoopAttachService

logger = get_logger(__name__)


class InMemoryAttachService:
    """Process-local attach store; payloads do not survive a restart."""

    def __init__(self) -> None:
        self._records: dict[str, AttachRecord] = {}

    async def create(self, trade_no: str, attach: str) -> None:
        self._records[trade_no] = AttachRecord(trade_no=trade_no, attach=attach)

    async def get(self, trade_no: str) -> str | None:
        record = self._records.get(trade_no)
        return record.attach if record else None

    async def delete(self, trade_no: str) -> None:
        self._records.pop(trade_no, None)


class DatabaseAttachService:
    """Attach store backed by the transaction_attachments table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, trade_no: str, attach: str) -> None:
        async with self._session_factory() as session:
            # merge keeps create idempotent for repeated client submissions
            await session.merge(
                TransactionAttachment(trade_no=trade_no, attach=attach, created_at=utc_now())
            )
            await session.commit()

        logger.debug("attach_record_created", trade_no=trade_no)

    async def get(self, trade_no: str) -> str | None:
        async with self._session_factory() as session:
            record = await session.get(TransactionAttachment, trade_no)
            return record.attach if record else None

    async def delete(self, trade_no: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(TransactionAttachment).where(TransactionAttachment.trade_no == trade_no)
            )
            await session.commit()

        logger.debug("attach_record_deleted", trade_no=trade_no)


async def save_attach(service: AttachService, trade_no: str, attach: str) -> bool:
    """
    Best-effort attach creation before receipt verification.

    Returns:
        True when a record was written. Failures are logged, never raised.
    """
    if not trade_no or not attach:
        return False

    try:
        await service.create(trade_no, attach)
    except Exception as exc:
        logger.warning("attach_record_create_failed", trade_no=trade_no, error=str(exc))
        return False
    return True


async def discard_attach(service: AttachService, trade_no: str) -> None:
    """Best-effort attach deletion once the order embeds the payload."""
    try:
        await service.delete(trade_no)
    except Exception as exc:
        # The record is simply retried on the next delivery
        logger.warning("attach_record_delete_failed", trade_no=trade_no, error=str(exc))


def build_attach_service(settings: Settings) -> AttachService:
    """Create the attach store selected by ``ATTACH_BACKEND``."""
    if settings.attach_backend == "database":
        from unipay.db.session import get_session_factory

        return DatabaseAttachService(get_session_factory())
    if settings.attach_backend == "noop":
        return NoopAttachService()
    return InMemoryAttachService()
