"""Cursor-based collection pagination.

Local collections are paged on the autoincrement primary key of the edge
table, newest first. The key is assigned at insertion and never reused, so a
cursor taken from an already-returned row stays stable while new rows are
appended. Remote collections are fetched and each member cache-resolved;
members that fail to resolve are dropped from the page.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import (
    AS_PUBLIC,
    ActivityType,
    Handle,
    JsonDict,
    ObjectType,
    OrderedCollection,
    OrderedCollectionPage,
    actor_url,
    as_list,
    get_ap_id,
)
from .actors import ActorCache
from .config import FederationConfig
from .errors import NotFoundError, ResolutionError, ValidationError
from .fetcher import RemoteFetcher
from .models import ActorFollowing, ActorRecord, FollowState, ObjectRecord, OutboxObject
from .objects import ObjectCache, original_author

logger = structlog.get_logger()


@dataclass
class Page:
    """One page of a collection with cursors for its neighbours."""
    items: list[Any] = field(default_factory=list)
    # Cursor for the next (older) page; None when this page is the last one
    next_cursor: int | None = None
    # Cursor for the previous (newer) page
    prev_cursor: int | None = None


async def _window(
    session: AsyncSession,
    query: Select,
    key: Any,
    limit: int,
    max_id: int | None,
    min_id: int | None,
) -> list[Any]:
    """Run ``query`` for one page of rows ordered newest first by ``key``."""
    if max_id is not None:
        query = query.where(key < max_id)
    if min_id is not None:
        # Rows immediately newer than the cursor, then flipped to newest first
        query = query.where(key > min_id).order_by(key.asc()).limit(limit)
        rows = list((await session.execute(query)).all())
        rows.reverse()
        return rows

    query = query.order_by(key.desc()).limit(limit)
    return list((await session.execute(query)).all())


class CollectionPaginator:
    """Serves followers and statuses collections."""

    def __init__(
        self,
        actors: ActorCache,
        objects: ObjectCache,
        fetcher: RemoteFetcher,
        config: FederationConfig,
    ):
        """Initialize paginator.

        Args:
            actors: Actor cache
            objects: Object cache
            fetcher: Remote document fetcher
            config: Federation configuration (page size bounds)
        """
        self.actors = actors
        self.objects = objects
        self.fetcher = fetcher
        self.config = config

    def clamp_limit(self, limit: int | None, default: int) -> int:
        if limit is None:
            return default
        return max(1, min(limit, self.config.max_page_size))

    # === Followers ===

    async def followers(
        self,
        session: AsyncSession,
        actor: ActorRecord,
        limit: int | None = None,
        max_id: int | None = None,
        min_id: int | None = None,
    ) -> Page:
        """Get followers of an actor, newest first.

        Args:
            session: Database session
            actor: Followed actor
            limit: Page size (clamped)
            max_id: Only followers older than this cursor
            min_id: Only followers newer than this cursor

        Returns:
            Page of ActorRecord
        """
        limit = self.clamp_limit(limit, self.config.default_followers_limit)

        if not self.actors.is_local(actor):
            return await self._remote_followers(session, actor, limit)

        query = (
            select(ActorFollowing.id, ActorRecord)
            .join(ActorRecord, ActorRecord.id == ActorFollowing.actor_id)
            .where(
                ActorFollowing.target_actor_id == actor.id,
                ActorFollowing.state == FollowState.ACCEPTED,
            )
        )
        rows = await _window(session, query, ActorFollowing.id, limit, max_id, min_id)

        page = Page(items=[row[1] for row in rows])
        if rows:
            page.prev_cursor = rows[0][0]
        if len(rows) == limit:
            page.next_cursor = rows[-1][0]
        return page

    async def _remote_followers(self, session: AsyncSession, actor: ActorRecord, limit: int) -> Page:
        try:
            members = await self.fetcher.fetch_collection_items(actor.endpoint("followers"), limit)
        except ResolutionError as e:
            logger.warning("Failed to fetch remote followers", actor_id=actor.actor_id, error=str(e))
            return Page()

        followers = []
        for member in members:
            try:
                followers.append(await self.actors.resolve(session, get_ap_id(member)))
            except (ResolutionError, ValidationError) as e:
                logger.warning("Dropping unresolvable follower", actor_id=actor.actor_id, error=str(e))
        return Page(items=followers)

    async def count_followers(self, session: AsyncSession, actor: ActorRecord) -> int:
        total = await session.scalar(
            select(func.count()).select_from(ActorFollowing).where(
                ActorFollowing.target_actor_id == actor.id,
                ActorFollowing.state == FollowState.ACCEPTED,
            )
        )
        return total or 0

    async def followers_collection(self, session: AsyncSession, actor: ActorRecord) -> JsonDict:
        """Followers OrderedCollection of a local actor."""
        followers_url = actor.endpoint("followers")
        collection = OrderedCollection(
            id=followers_url,
            total_items=await self.count_followers(session, actor),
            first=f"{followers_url}/page",
        )
        return collection.to_dict()

    async def followers_page(
        self,
        session: AsyncSession,
        actor: ActorRecord,
        max_id: int | None = None,
        min_id: int | None = None,
    ) -> JsonDict:
        """One OrderedCollectionPage of a local actor's followers."""
        if not self.actors.is_local(actor):
            raise NotFoundError(f"Not a local actor: {actor.actor_id}")

        followers_url = actor.endpoint("followers")
        page = await self.followers(
            session, actor, self.config.default_followers_limit, max_id=max_id, min_id=min_id
        )
        return self._collection_page(
            f"{followers_url}/page",
            followers_url,
            [follower.actor_id for follower in page.items],
            page,
            max_id,
            min_id,
        )

    def _collection_page(
        self,
        page_url: str,
        part_of: str,
        items: list[Any],
        page: Page,
        max_id: int | None,
        min_id: int | None,
    ) -> JsonDict:
        page_id = page_url
        if max_id is not None:
            page_id = f"{page_url}?max_id={max_id}"
        elif min_id is not None:
            page_id = f"{page_url}?min_id={min_id}"

        collection_page = OrderedCollectionPage(id=page_id, part_of=part_of, items=items)
        if page.next_cursor is not None:
            collection_page.next = f"{page_url}?max_id={page.next_cursor}"
        if page.prev_cursor is not None:
            collection_page.prev = f"{page_url}?min_id={page.prev_cursor}"
        return collection_page.to_dict()

    # === Statuses ===

    async def statuses(
        self,
        session: AsyncSession,
        handle: Handle,
        limit: int | None = None,
        max_id: str | None = None,
        exclude_replies: bool = False,
        pinned: bool = False,
    ) -> list[ObjectRecord]:
        """Get the public Notes of an account, newest first.

        Args:
            session: Database session
            handle: Account handle (local or remote)
            limit: Page size (clamped)
            max_id: mastodon_id of a previously seen status; only older
                statuses are returned
            exclude_replies: Skip replies (local accounts)
            pinned: Pinned statuses are not supported; always empty

        Raises:
            NotFoundError: If the account or the max_id status is unknown
        """
        limit = self.clamp_limit(limit, self.config.default_statuses_limit)
        if pinned:
            return []

        if handle.domain is None or handle.domain == self.actors.domain:
            return await self._local_statuses(session, handle, limit, max_id, exclude_replies)
        return await self._remote_statuses(session, handle, limit)

    async def _local_statuses(
        self,
        session: AsyncSession,
        handle: Handle,
        limit: int,
        max_id: str | None,
        exclude_replies: bool,
    ) -> list[ObjectRecord]:
        actor = await self.actors.get_actor_by_id(
            session, actor_url(self.actors.base_url, handle.local_part)
        )
        if actor is None:
            raise NotFoundError(f"Unknown account: {handle.acct}")

        cursor = None
        if max_id is not None:
            cursor = await session.scalar(
                select(OutboxObject.id)
                .join(ObjectRecord, ObjectRecord.id == OutboxObject.object_id)
                .where(OutboxObject.actor_id == actor.id, ObjectRecord.mastodon_id == max_id)
            )
            if cursor is None:
                raise NotFoundError(f"Unknown status: {max_id}")

        query = (
            select(OutboxObject.id, ObjectRecord)
            .join(ObjectRecord, ObjectRecord.id == OutboxObject.object_id)
            .where(
                OutboxObject.actor_id == actor.id,
                OutboxObject.target == AS_PUBLIC,
                ObjectRecord.type == ObjectType.NOTE.value,
            )
        )
        if exclude_replies:
            query = query.where(ObjectRecord.in_reply_to.is_(None))

        rows = await _window(session, query, OutboxObject.id, limit, cursor, None)
        return [row[1] for row in rows]

    async def _remote_statuses(self, session: AsyncSession, handle: Handle, limit: int) -> list[ObjectRecord]:
        link = await self.fetcher.query_acct_link(handle.domain, handle.acct)
        if link is None:
            raise NotFoundError(f"Unknown account: {handle.acct}")
        try:
            actor = await self.actors.resolve(session, link)
            activities = await self.fetcher.fetch_collection_items(actor.endpoint("outbox"), limit)
        except ResolutionError as e:
            raise NotFoundError(f"Cannot load account {handle.acct}: {e}") from e

        # One shared session, so items are resolved one at a time
        statuses = []
        for activity in activities:
            try:
                obj = await self._status_from_activity(session, activity)
            except (ResolutionError, ValidationError) as e:
                logger.warning("Dropping unresolvable status", acct=handle.acct, error=str(e))
                continue
            if obj is None:
                continue
            if obj.type != ObjectType.NOTE.value:
                logger.warning("Dropping status that is not a Note", object_id=obj.object_id, type=obj.type)
                continue
            statuses.append(obj)
        return statuses

    async def _status_from_activity(self, session: AsyncSession, activity: Any) -> ObjectRecord | None:
        if not isinstance(activity, dict):
            logger.warning("Dropping outbox item that is not an activity", item=activity)
            return None

        types = as_list(activity.get("type"))
        actor_id = get_ap_id(activity.get("actor") or "")
        if ActivityType.CREATE.value in types:
            data = activity.get("object")
            if isinstance(data, str):
                data = await self.fetcher.fetch_object(data)
            if not isinstance(data, dict):
                raise ValidationError("Create without object")
            if original_author(data) is None:
                data = {**data, "attributedTo": actor_id}
            obj, _ = await self.objects.cache_object(session, data, actor_id)
        elif ActivityType.ANNOUNCE.value in types:
            obj = await self.objects.resolve(session, get_ap_id(activity.get("object") or ""), actor_id)
        else:
            logger.warning("Unsupported outbox activity type", type=activity.get("type"))
            return None

        # Status entities render the author's account
        await self.actors.resolve(session, obj.original_actor_id)
        return obj

    # === Outbox ===

    async def outbox_collection(self, session: AsyncSession, actor: ActorRecord) -> JsonDict:
        """Outbox OrderedCollection of a local actor."""
        outbox_url = actor.endpoint("outbox")
        total = await session.scalar(
            select(func.count()).select_from(OutboxObject).where(
                OutboxObject.actor_id == actor.id,
                OutboxObject.target == AS_PUBLIC,
            )
        )
        collection = OrderedCollection(
            id=outbox_url,
            total_items=total or 0,
            first=f"{outbox_url}/page",
        )
        return collection.to_dict()

    async def outbox_page(
        self,
        session: AsyncSession,
        actor: ActorRecord,
        max_id: int | None = None,
        min_id: int | None = None,
    ) -> JsonDict:
        """One OrderedCollectionPage of a local actor's public outbox.

        Items authored by the actor are wrapped in Create activities, boosted
        items in Announce activities.
        """
        if not self.actors.is_local(actor):
            raise NotFoundError(f"Not a local actor: {actor.actor_id}")

        outbox_url = actor.endpoint("outbox")
        limit = self.config.default_statuses_limit
        query = (
            select(OutboxObject.id, OutboxObject, ObjectRecord)
            .join(ObjectRecord, ObjectRecord.id == OutboxObject.object_id)
            .where(OutboxObject.actor_id == actor.id, OutboxObject.target == AS_PUBLIC)
        )
        rows = await _window(session, query, OutboxObject.id, limit, max_id, min_id)

        page = Page(items=[self._outbox_activity(actor, row[1], row[2]) for row in rows])
        if rows:
            page.prev_cursor = rows[0][0]
        if len(rows) == limit:
            page.next_cursor = rows[-1][0]
        return self._collection_page(f"{outbox_url}/page", outbox_url, page.items, page, max_id, min_id)

    def _outbox_activity(self, actor: ActorRecord, entry: OutboxObject, obj: ObjectRecord) -> JsonDict:
        own = obj.original_actor_id == actor.actor_id
        activity = {
            "id": f"{actor.endpoint('outbox')}/{entry.id}",
            "type": ActivityType.CREATE.value if own else ActivityType.ANNOUNCE.value,
            "actor": actor.actor_id,
            "published": entry.published_date.isoformat(),
            "to": [entry.target],
            "cc": [actor.endpoint("followers")],
            "object": obj.to_dict() if own else obj.object_id,
        }
        return activity
