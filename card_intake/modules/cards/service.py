from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from card_intake.core.errors import StorageUnavailable
from card_intake.core.security import CallerIdentity
from card_intake.modules.cards.models import CardRecord

logger = structlog.get_logger()


class DuplicateIdentifierError(Exception):
    """The store refused an insert because the national ID already exists."""

    def __init__(self, national_id: str) -> None:
        self.national_id = national_id
        super().__init__(f"Card {national_id} already exists")


class CardStore(ABC):
    """Key-addressable card registry keyed by national ID."""

    @abstractmethod
    async def find_by_national_id(self, national_id: str) -> CardRecord | None:
        ...

    @abstractmethod
    async def insert(self, record: CardRecord) -> CardRecord:
        """Append ``record`` durably.

        Must raise DuplicateIdentifierError rather than store a second record
        with the same national ID.
        """
        ...

    @abstractmethod
    async def list_all(self) -> list[CardRecord]:
        ...


class SqlCardStore(CardStore):
    """CardStore over the ``card_records`` table.

    ``insert`` commits on its own so a success response is never sent for a
    row that is not durable yet.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def find_by_national_id(self, national_id: str) -> CardRecord | None:
        try:
            result = await self._db.execute(
                select(CardRecord).where(CardRecord.national_id == national_id)
            )
        except SQLAlchemyError as exc:
            logger.error("Card lookup failed", national_id=national_id, exc_info=True)
            raise StorageUnavailable() from exc
        return result.scalar_one_or_none()

    async def insert(self, record: CardRecord) -> CardRecord:
        self._db.add(record)
        try:
            await self._db.flush()
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateIdentifierError(record.national_id) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.error("Card insert failed", national_id=record.national_id, exc_info=True)
            raise StorageUnavailable() from exc
        return record

    async def list_all(self) -> list[CardRecord]:
        try:
            result = await self._db.execute(
                select(CardRecord).order_by(CardRecord.inserted_at.desc(), CardRecord.id.desc())
            )
        except SQLAlchemyError as exc:
            logger.error("Card listing failed", exc_info=True)
            raise StorageUnavailable() from exc
        return list(result.scalars().all())


async def find_existing(store: CardStore, national_id: str) -> CardRecord | None:
    """Duplicate guard: the already-committed card for ``national_id``, if any."""
    return await store.find_by_national_id(national_id)


async def commit_card(
    store: CardStore,
    *,
    full_name: str,
    national_id: str,
    submitter: CallerIdentity,
    center: str,
) -> CardRecord:
    """Append a new card attributed to ``submitter``; ``inserted_at`` is set here."""
    record = CardRecord(
        national_id=national_id,
        full_name=full_name,
        submitter_external_id=submitter.external_id,
        submitter_display_name=submitter.display_name,
        center=center,
        inserted_at=datetime.now(timezone.utc),
    )
    return await store.insert(record)
