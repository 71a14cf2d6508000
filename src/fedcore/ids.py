"""Allocation of locally-assigned sequential identifiers.

Identifiers follow the Mastodon snowflake layout: the creation time in
milliseconds shifted left by 16 bits, with a per-millisecond sequence number
in the low bits. They sort by creation time and are unique per entity kind.
"""

import asyncio
from datetime import datetime

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import StorageError
from .models import IdSequence, dialect_insert

logger = structlog.get_logger()

SEQUENCE_BITS = 16
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1
MAX_ATTEMPTS = 5
BACKOFF_SECONDS = 0.05


class IdentifierAllocator:
    """Hands out time-ordered identifiers backed by the id_sequences table."""

    def __init__(self, session_maker: async_sessionmaker):
        """Initialize allocator.

        Args:
            session_maker: Session factory; each allocation commits in its
                own short transaction so identifiers are never reused
        """
        self.session_maker = session_maker

    async def allocate(self, entity_kind: str, timestamp: datetime) -> str:
        """Allocate an identifier for an entity created at ``timestamp``.

        Must be called before the caller opens its own write transaction.

        Args:
            entity_kind: Table the identifier is scoped to (e.g. "actors")
            timestamp: Creation time of the entity

        Returns:
            Decimal identifier string

        Raises:
            StorageError: If the counter cannot be incremented after bounded
                retries or the millisecond bucket is exhausted
        """
        bucket = int(timestamp.timestamp() * 1000)

        for attempt in range(MAX_ATTEMPTS):
            try:
                sequence = await self._increment(entity_kind, bucket)
                break
            except OperationalError as e:
                logger.warning(
                    "Identifier allocation failed, retrying",
                    entity_kind=entity_kind,
                    attempt=attempt + 1,
                    error=str(e),
                )
                await asyncio.sleep(BACKOFF_SECONDS * (2 ** attempt))
        else:
            raise StorageError(f"Could not allocate identifier for {entity_kind}")

        if sequence > MAX_SEQUENCE:
            raise StorageError(f"Identifier bucket exhausted for {entity_kind} at {bucket}")

        return str((bucket << SEQUENCE_BITS) | sequence)

    async def _increment(self, entity_kind: str, bucket: int) -> int:
        async with self.session_maker() as session:
            stmt = dialect_insert(session, IdSequence).values(
                table_name=entity_kind, bucket=bucket, value=0
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[IdSequence.table_name, IdSequence.bucket],
                set_={"value": IdSequence.value + 1},
            ).returning(IdSequence.value)
            result = await session.execute(stmt)
            sequence = result.scalar_one()
            await session.commit()
            return sequence
