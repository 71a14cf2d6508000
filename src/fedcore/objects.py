"""Object cache.

Content objects (Notes) are cached once per canonical ID together with
their provenance: the actor that authored them and the actor that delivered
them, which differ when an object arrives through an Announce.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import AS_PUBLIC, JsonDict, ObjectType, get_ap_id
from .errors import ResolutionError, ValidationError
from .fetcher import RemoteFetcher
from .ids import IdentifierAllocator
from .models import ActorRecord, ObjectRecord, OutboxObject, dialect_insert
from .sanitize import sanitize_content, sanitize_object

logger = structlog.get_logger()


def original_author(data: JsonDict) -> str | None:
    """Return the authoring actor of an object document, if declared."""
    attributed_to = data.get("attributedTo")
    if isinstance(attributed_to, list):
        attributed_to = attributed_to[0] if attributed_to else None
    if attributed_to is None:
        return None
    try:
        return get_ap_id(attributed_to)
    except ValidationError:
        return None


class ObjectCache:
    """Local store of content objects."""

    def __init__(self, fetcher: RemoteFetcher, allocator: IdentifierAllocator, base_url: str):
        self.fetcher = fetcher
        self.allocator = allocator
        self.base_url = base_url.rstrip("/")

    async def get_object_by_id(self, session: AsyncSession, object_id: str) -> ObjectRecord | None:
        """Get a cached object by canonical ID, backfilling its mastodon_id."""
        result = await session.execute(
            select(ObjectRecord).where(ObjectRecord.object_id == object_id)
        )
        obj = result.scalar_one_or_none()
        if obj is not None and obj.mastodon_id is None:
            mastodon_id = await self.allocator.allocate(
                "objects", obj.created_at.replace(tzinfo=timezone.utc)
            )
            await session.execute(
                update(ObjectRecord)
                .where(ObjectRecord.id == obj.id, ObjectRecord.mastodon_id.is_(None))
                .values(mastodon_id=mastodon_id)
            )
            await session.commit()
            await session.refresh(obj)
        return obj

    async def get_object_by_mastodon_id(
        self,
        session: AsyncSession,
        mastodon_id: str,
    ) -> ObjectRecord | None:
        result = await session.execute(
            select(ObjectRecord).where(ObjectRecord.mastodon_id == mastodon_id)
        )
        return result.scalar_one_or_none()

    async def cache_object(
        self,
        session: AsyncSession,
        data: JsonDict,
        delivering_actor_id: str | None,
        local: bool = False,
    ) -> tuple[ObjectRecord, bool]:
        """Store an object document once.

        Args:
            session: Database session
            data: Object document (sanitized here)
            delivering_actor_id: Actor that delivered or relayed the object
            local: Whether the object was authored on this server

        Returns:
            Tuple of (stored object, whether this call inserted it)

        Raises:
            ResolutionError: If the document lacks id, type or author
        """
        obj = sanitize_object(data)
        object_id = obj.get("id")
        object_type = obj.get("type")
        author = original_author(obj)
        if not isinstance(object_id, str) or not object_id or not isinstance(object_type, str):
            raise ResolutionError("missing fields on Object")
        if author is None:
            raise ResolutionError(f"Object {object_id} has no attributedTo")

        in_reply_to = obj.get("inReplyTo")
        if in_reply_to is not None:
            try:
                in_reply_to = get_ap_id(in_reply_to)
            except ValidationError:
                in_reply_to = None

        now = datetime.now(timezone.utc)
        mastodon_id = await self.allocator.allocate("objects", now)
        properties = {key: value for key, value in obj.items() if key not in ("@context", "id", "type")}

        stmt = dialect_insert(session, ObjectRecord).values(
            object_id=object_id,
            type=object_type,
            mastodon_id=mastodon_id,
            original_actor_id=author,
            delivering_actor_id=delivering_actor_id,
            in_reply_to=in_reply_to,
            local=local,
            properties=properties,
            created_at=now,
        ).on_conflict_do_nothing(
            index_elements=[ObjectRecord.object_id]
        ).returning(ObjectRecord.id)
        created = (await session.execute(stmt)).scalar_one_or_none() is not None
        await session.commit()

        if created:
            logger.info(
                "Cached object",
                object_id=object_id,
                original_actor_id=author,
                delivering_actor_id=delivering_actor_id,
            )

        stored = await self.get_object_by_id(session, object_id)
        if stored is None:
            raise ResolutionError(f"Object {object_id} vanished after insert")
        return stored, created

    async def resolve(
        self,
        session: AsyncSession,
        object_id: str,
        delivering_actor_id: str | None,
    ) -> ObjectRecord:
        """Get an object, fetching and caching it if unknown.

        Raises:
            ResolutionError: If the object cannot be fetched or is malformed
        """
        existing = await self.get_object_by_id(session, object_id)
        if existing is not None:
            return existing

        document = await self.fetcher.fetch_object(object_id)
        stored, _ = await self.cache_object(session, document, delivering_actor_id)
        return stored

    async def create_local_note(
        self,
        session: AsyncSession,
        author: ActorRecord,
        content: str,
        in_reply_to: str | None = None,
        to: list[str] | None = None,
        summary: str | None = None,
    ) -> ObjectRecord:
        """Create a Note authored by a local actor and publish it to its outbox.

        Args:
            session: Database session
            author: Local author
            content: Note content (HTML)
            in_reply_to: Optional ID of the object replied to
            to: Audience (defaults to public)
            summary: Optional content warning

        Returns:
            Stored ObjectRecord
        """
        now = datetime.now(timezone.utc)
        audience = to or [AS_PUBLIC]
        note: dict[str, Any] = {
            "id": f"{self.base_url}/ap/o/{uuid.uuid4()}",
            "type": ObjectType.NOTE.value,
            "attributedTo": author.actor_id,
            "content": sanitize_content(content),
            "published": now.isoformat(),
            "to": audience,
            "cc": [author.endpoint("followers")],
        }
        if in_reply_to:
            note["inReplyTo"] = in_reply_to
        if summary:
            note["summary"] = summary

        obj, _ = await self.cache_object(session, note, author.actor_id, local=True)

        target = AS_PUBLIC if AS_PUBLIC in audience else author.endpoint("followers")
        session.add(OutboxObject(
            actor_id=author.id,
            object_id=obj.id,
            target=target,
            create_activity_id=obj.object_id,
            published_date=now,
        ))
        await session.commit()

        return obj
