"""Tests for Mastodon entity shaping."""

from datetime import datetime

import pytest

from fedcore.mastodon import (
    DEFAULT_AVATAR,
    DEFAULT_HEADER,
    account_acct,
    to_mastodon_account,
    to_mastodon_status,
)
from fedcore.models import ActorFavourite, ActorReblog, ActorReply

ALICE = "https://social.example/ap/users/alice"
BOB = "https://remote.example/users/bob"


class TestAccount:
    """Tests for to_mastodon_account."""

    @pytest.mark.asyncio
    async def test_local_account(self, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)

        account = to_mastodon_account(alice)

        assert account["id"] == alice.mastodon_id
        assert account["username"] == "alice"
        assert account["acct"] == "alice"
        assert account["display_name"] == "Alice"
        assert account["avatar"] == DEFAULT_AVATAR
        assert account["header_static"] == DEFAULT_HEADER
        assert not account["bot"]
        assert account["created_at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_remote_account_acct(self, make_actor):
        bob = await make_actor(BOB, "bob")
        assert account_acct(bob) == "bob@remote.example"

    @pytest.mark.asyncio
    async def test_images_and_service(self, session, make_actor):
        bob = await make_actor(BOB, "bob")
        bob.type = "Service"
        bob.properties = {
            **bob.properties,
            "icon": {"type": "Image", "url": "https://remote.example/a.png"},
            "image": {"type": "Image", "url": "https://remote.example/h.png"},
        }

        account = to_mastodon_account(bob)

        assert account["avatar"] == "https://remote.example/a.png"
        assert account["header"] == "https://remote.example/h.png"
        assert account["bot"]


class TestStatus:
    """Tests for to_mastodon_status."""

    @pytest.mark.asyncio
    async def test_local_status_with_counts(self, session, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        note = await make_object(
            "https://social.example/ap/o/1", alice, local=True, published="2024-01-15T10:00:00Z"
        )
        reply = await make_object(
            "https://remote.example/notes/2", bob, in_reply_to=note.object_id
        )
        session.add_all([
            ActorFavourite(actor_id=bob.id, object_id=note.id),
            ActorReblog(actor_id=bob.id, object_id=note.id),
            ActorReply(actor_id=bob.id, object_id=reply.id, in_reply_to_object_id=note.id),
        ])
        await session.commit()

        status = await to_mastodon_status(session, note, "social.example")

        assert status["id"] == note.mastodon_id
        assert status["uri"] == note.object_id
        assert status["url"] == f"https://social.example/@alice/{note.mastodon_id}"
        assert status["created_at"] == "2024-01-15T10:00:00Z"
        assert status["account"]["id"] == alice.mastodon_id
        assert status["favourites_count"] == 1
        assert status["reblogs_count"] == 1
        assert status["replies_count"] == 1
        assert status["in_reply_to_id"] is None

    @pytest.mark.asyncio
    async def test_reply_links_parent(self, session, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        note = await make_object("https://social.example/ap/o/1", alice, local=True)
        reply = await make_object(
            "https://remote.example/notes/2", bob, in_reply_to=note.object_id, url="https://remote.example/@bob/2"
        )

        status = await to_mastodon_status(session, reply, "social.example")

        assert status["in_reply_to_id"] == note.mastodon_id
        assert status["in_reply_to_account_id"] == alice.mastodon_id
        assert status["url"] == "https://remote.example/@bob/2"
        assert status["account"]["acct"] == "bob@remote.example"

    @pytest.mark.asyncio
    async def test_content_warning(self, session, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        note = await make_object("https://social.example/ap/o/1", alice, local=True, summary="<p>spoilers</p>")

        status = await to_mastodon_status(session, note, "social.example")

        assert status["spoiler_text"] == "spoilers"
        assert status["sensitive"]

    @pytest.mark.asyncio
    async def test_uncached_author(self, session, make_actor, make_object):
        ghost = await make_actor(BOB, "bob")
        note = await make_object("https://remote.example/notes/3", ghost)
        note.original_actor_id = "https://gone.example/users/x"

        assert await to_mastodon_status(session, note, "social.example") is None

    @pytest.mark.asyncio
    async def test_created_at_fallback(self, session, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        note = await make_object("https://social.example/ap/o/1", alice, local=True)
        note.created_at = datetime(2024, 2, 1, 12, 0, 0)

        status = await to_mastodon_status(session, note, "social.example")

        assert status["created_at"] == "2024-02-01T12:00:00Z"
