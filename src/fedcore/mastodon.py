"""Mastodon client API JSON shaping.

https://docs.joinmastodon.org/entities/Account/
https://docs.joinmastodon.org/entities/Status/
"""

from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import ActorType
from .models import ActorFavourite, ActorReblog, ActorRecord, ActorReply, ObjectRecord
from .sanitize import get_text_content

DEFAULT_AVATAR = "https://masto.ai/avatars/original/missing.png"
DEFAULT_HEADER = "https://masto.ai/headers/original/missing.png"


def _isoformat(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _image_url(value: Any) -> str | None:
    if isinstance(value, dict) and isinstance(value.get("url"), str):
        return value["url"]
    return None


def account_acct(actor: ActorRecord) -> str:
    """user for local accounts, user@host for remote ones."""
    if actor.is_local:
        return actor.preferred_username
    return f"{actor.preferred_username}@{urlparse(actor.actor_id).hostname}"


def to_mastodon_account(actor: ActorRecord) -> dict[str, Any]:
    """Build the Mastodon Account entity of an actor."""
    properties = actor.properties
    avatar = _image_url(properties.get("icon")) or DEFAULT_AVATAR
    header = _image_url(properties.get("image")) or DEFAULT_HEADER
    username = actor.preferred_username

    return {
        "id": actor.mastodon_id,
        "username": username,
        "acct": account_acct(actor),
        "display_name": properties.get("name") or username,
        "note": properties.get("summary") or "",
        "url": properties.get("url") or actor.actor_id,
        "avatar": avatar,
        "avatar_static": avatar,
        "header": header,
        "header_static": header,
        "locked": False,
        "bot": actor.type in (ActorType.SERVICE.value, ActorType.APPLICATION.value),
        "group": actor.type == ActorType.GROUP.value,
        "discoverable": bool(properties.get("discoverable", True)),
        "created_at": _isoformat(actor.created_at),
        "emojis": [],
        "fields": [],
    }


async def _count(session: AsyncSession, column: Any, object_id: int) -> int:
    return await session.scalar(
        select(func.count()).select_from(column.class_).where(column == object_id)
    ) or 0


async def to_mastodon_status(
    session: AsyncSession,
    obj: ObjectRecord,
    domain: str,
) -> dict[str, Any] | None:
    """Build the Mastodon Status entity of an object.

    Args:
        session: Database session
        obj: Cached object
        domain: Local domain, used for URLs of local statuses

    Returns:
        Status dictionary, or None if the author is not cached
    """
    author = await session.scalar(
        select(ActorRecord).where(ActorRecord.actor_id == obj.original_actor_id)
    )
    if author is None:
        return None

    properties = obj.properties
    in_reply_to_id = None
    in_reply_to_account_id = None
    if obj.in_reply_to:
        parent = await session.scalar(
            select(ObjectRecord).where(ObjectRecord.object_id == obj.in_reply_to)
        )
        if parent is not None:
            in_reply_to_id = parent.mastodon_id
            in_reply_to_account_id = await session.scalar(
                select(ActorRecord.mastodon_id).where(ActorRecord.actor_id == parent.original_actor_id)
            )

    if obj.local:
        url = f"https://{domain}/@{author.preferred_username}/{obj.mastodon_id}"
    else:
        url = properties.get("url") or obj.object_id
    spoiler_text = get_text_content(properties.get("summary") or "")

    return {
        "id": obj.mastodon_id,
        "uri": obj.object_id,
        "url": url,
        "created_at": properties.get("published") or _isoformat(obj.created_at),
        "account": to_mastodon_account(author),
        "content": properties.get("content") or "",
        "spoiler_text": spoiler_text,
        "sensitive": bool(spoiler_text or properties.get("sensitive")),
        "visibility": "public",
        "in_reply_to_id": in_reply_to_id,
        "in_reply_to_account_id": in_reply_to_account_id,
        "favourites_count": await _count(session, ActorFavourite.object_id, obj.id),
        "reblogs_count": await _count(session, ActorReblog.object_id, obj.id),
        "replies_count": await _count(session, ActorReply.in_reply_to_object_id, obj.id),
        "media_attachments": [],
        "mentions": [],
        "tags": [],
        "emojis": [],
    }
