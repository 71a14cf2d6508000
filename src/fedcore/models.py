"""Database models for the federation core."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .activitypub_types import ACTOR_TYPES, Actor, ActorType, PublicKey


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FollowState(str, Enum):
    """State of a follow edge."""
    PENDING = "pending"
    ACCEPTED = "accepted"


class NotificationType(str, Enum):
    """Kinds of in-app notifications."""
    FAVOURITE = "favourite"
    FOLLOW = "follow"
    REBLOG = "reblog"
    MENTION = "mention"


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class ActorRecord(Base):
    """Stored actor, local or cached remote.

    Local actors carry an email and wrapped private key; remote actors only
    carry what their document published.
    """
    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Canonical actor ID URL (e.g., https://mastodon.social/users/alice)
    actor_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # Locally-assigned sequential identifier exposed by the client API
    mastodon_id: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(256), unique=True, nullable=True)

    # Display fields, endpoints, alsoKnownAs and arbitrary named properties
    properties: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    public_key_pem: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    private_key: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    private_key_salt: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        Index("ix_actors_type", "type"),
    )

    @property
    def is_local(self) -> bool:
        return self.private_key is not None

    @property
    def preferred_username(self) -> str:
        return self.properties.get("preferredUsername") or ""

    def endpoint(self, name: str) -> str:
        """inbox/outbox/following/followers URL, defaulted from the canonical id."""
        return self.properties.get(name) or f"{self.actor_id}/{name}"

    def to_actor(self) -> Actor:
        """Build the public actor view."""
        properties = self.properties
        public_key = None
        if self.public_key_pem:
            public_key = PublicKey(
                id=f"{self.actor_id}#main-key",
                owner=self.actor_id,
                public_key_pem=self.public_key_pem,
            )

        actor_type = self.type if self.type in ACTOR_TYPES else ActorType.PERSON.value
        preferred_username = self.preferred_username
        return Actor(
            id=self.actor_id,
            type=ActorType(actor_type),
            preferred_username=preferred_username,
            name=properties.get("name") or preferred_username,
            summary=properties.get("summary") or "",
            url=properties.get("url") or self.actor_id,
            inbox=self.endpoint("inbox"),
            outbox=self.endpoint("outbox"),
            followers=self.endpoint("followers"),
            following=self.endpoint("following"),
            public_key=public_key,
            icon=properties.get("icon"),
            image=properties.get("image"),
            also_known_as=list(properties.get("alsoKnownAs") or []),
            published=self.created_at.replace(tzinfo=timezone.utc).isoformat(),
        )


class ObjectRecord(Base):
    """Stored content object (e.g. a Note), local or cached remote."""
    __tablename__ = "objects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    object_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    mastodon_id: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)

    # Provenance: who wrote it and who handed it to us
    original_actor_id: Mapped[str] = mapped_column(String(512), nullable=False)
    delivering_actor_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    in_reply_to: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    local: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    properties: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        Index("ix_objects_original_actor", "original_actor_id"),
        Index("ix_objects_in_reply_to", "in_reply_to"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Rebuild the ActivityPub document of the object."""
        return {"id": self.object_id, "type": self.type, **self.properties}


class ActorFollowing(Base):
    """Follow edge: actor follows target actor."""
    __tablename__ = "actor_following"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    target_actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    state: Mapped[FollowState] = mapped_column(
        SQLEnum(FollowState), default=FollowState.ACCEPTED, nullable=False
    )
    # Follow activity ID for Accept/Reject
    follow_activity_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("actor_id", "target_actor_id", name="uq_actor_following"),
        Index("ix_actor_following_target", "target_actor_id"),
        {"sqlite_autoincrement": True},
    )


class ActorFavourite(Base):
    """Like edge: actor liked object."""
    __tablename__ = "actor_favourites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    object_id: Mapped[int] = mapped_column(Integer, ForeignKey("objects.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("actor_id", "object_id", name="uq_actor_favourite"),
        Index("ix_actor_favourites_object", "object_id"),
        {"sqlite_autoincrement": True},
    )


class ActorReblog(Base):
    """Reblog edge: actor announced object."""
    __tablename__ = "actor_reblogs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    object_id: Mapped[int] = mapped_column(Integer, ForeignKey("objects.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("actor_id", "object_id", name="uq_actor_reblog"),
        Index("ix_actor_reblogs_object", "object_id"),
        {"sqlite_autoincrement": True},
    )


class ActorReply(Base):
    """Reply edge: object replies to another object."""
    __tablename__ = "actor_replies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    object_id: Mapped[int] = mapped_column(Integer, ForeignKey("objects.id"), nullable=False)
    in_reply_to_object_id: Mapped[int] = mapped_column(Integer, ForeignKey("objects.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("object_id", "in_reply_to_object_id", name="uq_actor_reply"),
        Index("ix_actor_replies_parent", "in_reply_to_object_id"),
        {"sqlite_autoincrement": True},
    )


class OutboxObject(Base):
    """Object published (or boosted) in an actor's outbox."""
    __tablename__ = "outbox_objects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    object_id: Mapped[int] = mapped_column(Integer, ForeignKey("objects.id"), nullable=False)
    # Audience: the public collection or the actor's followers URL
    target: Mapped[str] = mapped_column(String(512), nullable=False)
    # Set once the author's Create for the object has been applied
    create_activity_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    published_date: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("actor_id", "object_id", name="uq_outbox_object"),
        Index("ix_outbox_objects_actor", "actor_id"),
        {"sqlite_autoincrement": True},
    )


class Notification(Base):
    """In-app notification addressed to an actor."""
    __tablename__ = "actor_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType), nullable=False)
    # Recipient
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    from_actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("actors.id"), nullable=False)
    object_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("objects.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        Index("ix_actor_notifications_actor", "actor_id"),
        {"sqlite_autoincrement": True},
    )


class Peer(Base):
    """Remote server origin observed through federation traffic."""
    __tablename__ = "peers"

    domain: Mapped[str] = mapped_column(String(256), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, nullable=False)


class IdSequence(Base):
    """Per (entity kind, millisecond) counter backing identifier allocation."""
    __tablename__ = "id_sequences"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    bucket: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ServerSetting(Base):
    """Instance-level named setting."""
    __tablename__ = "server_settings"

    setting_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)


class ServerRule(Base):
    """Instance rule shown to users."""
    __tablename__ = "server_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        {"sqlite_autoincrement": True},
    )


def dialect_insert(session: AsyncSession, model: type[Base]) -> Any:
    """Return an INSERT construct supporting ON CONFLICT for the bound engine."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


async def init_db(database_url: str, **engine_kwargs: Any) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine = create_async_engine(database_url, echo=False, **engine_kwargs)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
