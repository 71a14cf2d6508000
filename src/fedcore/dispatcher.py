"""Inbound activity processing.

Each inbound activity moves through received -> validated -> applied ->
notified, or received -> rejected. Validation resolves every referenced
actor and object (fetching and caching remote ones); application inserts the
relationship edge and, only when the edge is new, the notification in the
same transaction. Redelivered activities therefore leave no new rows.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import (
    AS_PUBLIC,
    ActivityType,
    AnnounceActivity,
    CreateActivity,
    FollowActivity,
    InboundActivity,
    JsonDict,
    LikeActivity,
    UndoActivity,
    as_list,
    get_ap_id,
    parse_activity,
)
from .actors import ActorCache
from .errors import ResolutionError, StorageError, ValidationError
from .models import (
    ActorFavourite,
    ActorFollowing,
    ActorRecord,
    ActorReblog,
    ActorReply,
    FollowState,
    NotificationType,
    ObjectRecord,
    OutboxObject,
    dialect_insert,
)
from .notifications import NotificationEmitter
from .objects import ObjectCache, original_author

logger = structlog.get_logger()

Result = dict[str, Any]


def _parse_published(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return datetime.now(timezone.utc)


class ActivityDispatcher:
    """Routes inbound activities to one handler per activity variant."""

    def __init__(
        self,
        actors: ActorCache,
        objects: ObjectCache,
        notifications: NotificationEmitter,
    ):
        """Initialize dispatcher.

        Args:
            actors: Actor cache
            objects: Object cache
            notifications: Notification emitter
        """
        self.actors = actors
        self.objects = objects
        self.notifications = notifications
        self._handlers: dict[
            type[InboundActivity], Callable[[AsyncSession, Any], Awaitable[Result]]
        ] = {
            LikeActivity: self._handle_like,
            FollowActivity: self._handle_follow,
            AnnounceActivity: self._handle_announce,
            CreateActivity: self._handle_create,
            UndoActivity: self._handle_undo,
        }

    async def dispatch(self, session: AsyncSession, activity_data: JsonDict) -> Result:
        """Process one inbound activity.

        Resolution and validation failures reject the activity and are only
        logged; they never propagate to the delivering server.

        Args:
            session: Database session
            activity_data: Inbound activity JSON

        Returns:
            Status dictionary (applied, duplicate, rejected or ignored)

        Raises:
            StorageError: If a write fails for a reason other than a duplicate
        """
        activity_type = activity_data.get("type", "")
        activity_id = activity_data.get("id", "")

        try:
            activity = parse_activity(activity_data)
        except ValidationError as e:
            logger.warning("Rejected activity", type=activity_type, activity_id=activity_id, reason=str(e))
            return {"status": "rejected", "reason": str(e)}

        if activity is None:
            logger.info("Ignoring unsupported activity type", type=activity_type, activity_id=activity_id)
            return {"status": "ignored", "reason": f"unsupported type: {activity_type}"}

        logger.info(
            "Processing inbox activity",
            type=activity_type,
            activity_id=activity_id,
            from_actor=activity.actor,
        )

        handler = self._handlers[type(activity)]
        try:
            return await handler(session, activity)
        except (ResolutionError, ValidationError) as e:
            await session.rollback()
            logger.warning(
                "Rejected activity",
                type=activity_type,
                activity_id=activity_id,
                from_actor=activity.actor,
                reason=str(e),
            )
            return {"status": "rejected", "reason": str(e)}
        except SQLAlchemyError as e:
            await session.rollback()
            raise StorageError(f"Failed to apply {activity_type} {activity_id}: {e}") from e

    # === Helpers ===

    async def _insert_edge(self, session: AsyncSession, model: Any, **values: Any) -> bool:
        """Insert an edge row; returns False when it already existed."""
        stmt = dialect_insert(session, model).values(**values).on_conflict_do_nothing().returning(model.id)
        return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def _apply_edge(
        self,
        session: AsyncSession,
        activity: InboundActivity,
        model: Any,
        values: dict[str, Any],
        kind: NotificationType,
        recipient: ActorRecord,
        origin: ActorRecord,
        subject: ObjectRecord | None = None,
    ) -> Result:
        if not await self._insert_edge(session, model, **values):
            await session.commit()
            logger.info("Duplicate activity", type=activity.kind.value, activity_id=activity.id)
            return {"status": "duplicate"}

        notification_id = await self.notifications.emit(session, kind, recipient, origin, subject)
        await session.commit()
        self.notifications.request_delivery(notification_id, kind, recipient, origin, subject)
        return {"status": "applied"}

    async def _known_object(self, session: AsyncSession, object_id: str) -> ObjectRecord:
        obj = await self.objects.get_object_by_id(session, object_id)
        if obj is None or not obj.original_actor_id:
            raise ValidationError(f"unknown object: {object_id}")
        return obj

    # === Handlers ===

    async def _handle_like(self, session: AsyncSession, activity: LikeActivity) -> Result:
        obj = await self._known_object(session, activity.object_id)
        from_actor = await self.actors.resolve(session, activity.actor)
        target_actor = await self.actors.get_actor_by_id(session, obj.original_actor_id)
        if target_actor is None:
            raise ValidationError(f"object actor not found: {obj.original_actor_id}")

        return await self._apply_edge(
            session,
            activity,
            ActorFavourite,
            {"actor_id": from_actor.id, "object_id": obj.id},
            NotificationType.FAVOURITE,
            recipient=target_actor,
            origin=from_actor,
            subject=obj,
        )

    async def _handle_follow(self, session: AsyncSession, activity: FollowActivity) -> Result:
        followee = await self.actors.resolve(session, activity.object_id)
        follower = await self.actors.resolve(session, activity.actor)

        # Follows are accepted automatically
        result = await self._apply_edge(
            session,
            activity,
            ActorFollowing,
            {
                "actor_id": follower.id,
                "target_actor_id": followee.id,
                "state": FollowState.ACCEPTED,
                "follow_activity_id": activity.id or None,
                "created_at": datetime.now(timezone.utc),
            },
            NotificationType.FOLLOW,
            recipient=followee,
            origin=follower,
        )
        if result["status"] == "applied":
            logger.info("Accepted follow", from_actor=follower.actor_id, to_actor=followee.actor_id)
        return result

    async def _handle_announce(self, session: AsyncSession, activity: AnnounceActivity) -> Result:
        announcer = await self.actors.resolve(session, activity.actor)
        obj = await self.objects.resolve(session, activity.object_id, announcer.actor_id)
        author = await self.actors.resolve(session, obj.original_actor_id)

        target = AS_PUBLIC if activity.is_public else announcer.endpoint("followers")
        await self._insert_edge(
            session,
            OutboxObject,
            actor_id=announcer.id,
            object_id=obj.id,
            target=target,
            published_date=_parse_published(activity.published),
            created_at=datetime.now(timezone.utc),
        )
        return await self._apply_edge(
            session,
            activity,
            ActorReblog,
            {"actor_id": announcer.id, "object_id": obj.id, "created_at": datetime.now(timezone.utc)},
            NotificationType.REBLOG,
            recipient=author,
            origin=announcer,
            subject=obj,
        )

    async def _handle_create(self, session: AsyncSession, activity: CreateActivity) -> Result:
        author = await self.actors.resolve(session, activity.actor)

        if isinstance(activity.object, dict):
            data = dict(activity.object)
        else:
            data = await self.objects.fetcher.fetch_object(activity.object_id)

        declared = original_author(data)
        if declared is None:
            data["attributedTo"] = author.actor_id
        elif declared != author.actor_id:
            raise ValidationError(f"attributedTo {declared} does not match actor {author.actor_id}")

        obj, _ = await self.objects.cache_object(session, data, author.actor_id)

        # Resolve everything that may need its own commit before writing edges
        parent = None
        recipients: dict[int, ActorRecord] = {}
        if obj.in_reply_to:
            parent = await self.objects.get_object_by_id(session, obj.in_reply_to)
            if parent is not None:
                parent_author = await self.actors.get_actor_by_id(session, parent.original_actor_id)
                if parent_author is not None:
                    recipients[parent_author.id] = parent_author
        for mentioned in await self._mentioned_local_actors(session, obj):
            recipients[mentioned.id] = mentioned
        recipients.pop(author.id, None)

        audience = (
            activity.to
            + activity.cc
            + as_list(obj.properties.get("to"))
            + as_list(obj.properties.get("cc"))
        )
        target = AS_PUBLIC if AS_PUBLIC in audience else author.endpoint("followers")
        published = _parse_published(obj.properties.get("published") or activity.published)

        # A row left by an earlier self-boost is claimed by the first Create;
        # once claimed, the conditional update matches nothing
        create_id = activity.id or obj.object_id
        stmt = dialect_insert(session, OutboxObject).values(
            actor_id=author.id,
            object_id=obj.id,
            target=target,
            create_activity_id=create_id,
            published_date=published,
            created_at=datetime.now(timezone.utc),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[OutboxObject.actor_id, OutboxObject.object_id],
            set_={"create_activity_id": create_id, "target": target, "published_date": published},
            where=OutboxObject.create_activity_id.is_(None),
        ).returning(OutboxObject.id)
        if (await session.execute(stmt)).scalar_one_or_none() is None:
            await session.commit()
            logger.info("Duplicate activity", type=activity.kind.value, activity_id=activity.id)
            return {"status": "duplicate"}

        if parent is not None:
            await self._insert_edge(
                session,
                ActorReply,
                actor_id=author.id,
                object_id=obj.id,
                in_reply_to_object_id=parent.id,
                created_at=datetime.now(timezone.utc),
            )

        emitted = []
        for recipient in recipients.values():
            notification_id = await self.notifications.emit(
                session, NotificationType.MENTION, recipient, author, obj
            )
            emitted.append((notification_id, recipient))
        await session.commit()

        for notification_id, recipient in emitted:
            self.notifications.request_delivery(
                notification_id, NotificationType.MENTION, recipient, author, obj
            )
        return {"status": "applied"}

    async def _mentioned_local_actors(self, session: AsyncSession, obj: ObjectRecord) -> list[ActorRecord]:
        found = []
        for tag in obj.properties.get("tag") or []:
            if not isinstance(tag, dict) or tag.get("type") != "Mention":
                continue
            href = tag.get("href")
            if not isinstance(href, str) or urlparse(href).hostname != self.actors.domain:
                continue
            actor = await self.actors.get_actor_by_id(session, href)
            if actor is not None:
                found.append(actor)
        return found

    async def _handle_undo(self, session: AsyncSession, activity: UndoActivity) -> Result:
        inner = activity.object
        if not isinstance(inner, dict):
            return {"status": "ignored", "reason": "undo object is ID only"}

        inner_actor = inner.get("actor")
        if inner_actor is not None and get_ap_id(inner_actor) != activity.actor:
            raise ValidationError("Undo actor does not match the undone activity's actor")

        undoable = (ActivityType.FOLLOW.value, ActivityType.LIKE.value, ActivityType.ANNOUNCE.value)
        inner_type = next((t for t in as_list(inner.get("type")) if t in undoable), None)
        if inner_type is None:
            return {"status": "ignored", "reason": f"unsupported undo: {inner.get('type')}"}

        actor = await self.actors.get_actor_by_id(session, activity.actor)
        target_id = get_ap_id(inner.get("object") or "")
        if actor is None:
            return {"status": "ignored", "reason": "unknown actor"}

        if inner_type == ActivityType.FOLLOW.value:
            followee = await self.actors.get_actor_by_id(session, target_id)
            if followee is None:
                return {"status": "ignored", "reason": "unknown actor"}
            statements = [
                delete(ActorFollowing).where(
                    ActorFollowing.actor_id == actor.id,
                    ActorFollowing.target_actor_id == followee.id,
                )
            ]
        else:
            obj = await self.objects.get_object_by_id(session, target_id)
            if obj is None:
                return {"status": "ignored", "reason": "unknown object"}
            model = ActorFavourite if inner_type == ActivityType.LIKE.value else ActorReblog
            statements = [delete(model).where(model.actor_id == actor.id, model.object_id == obj.id)]
            if model is ActorReblog:
                statements.append(
                    delete(OutboxObject).where(
                        OutboxObject.actor_id == actor.id,
                        OutboxObject.object_id == obj.id,
                        OutboxObject.create_activity_id.is_(None),
                    )
                )

        removed = 0
        for statement in statements:
            removed += (await session.execute(statement)).rowcount
        await session.commit()

        logger.info("Processed undo", type=inner_type, from_actor=activity.actor, target=target_id)
        if not removed:
            return {"status": "ignored", "reason": "nothing to undo"}
        return {"status": "applied"}
