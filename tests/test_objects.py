"""Tests for the object cache."""

import pytest
from sqlalchemy import func, select, update

from fedcore.activitypub_types import AS_PUBLIC
from fedcore.errors import ResolutionError
from fedcore.models import ObjectRecord, OutboxObject
from fedcore.objects import original_author

BOB = "https://remote.example/users/bob"
RELAY = "https://relay.example/actor"
NOTE = "https://remote.example/notes/1"


class TestOriginalAuthor:
    """Tests for original_author."""

    def test_string(self):
        assert original_author({"attributedTo": BOB}) == BOB

    def test_inline_and_list(self):
        assert original_author({"attributedTo": [{"id": BOB, "type": "Person"}]}) == BOB

    def test_missing(self):
        assert original_author({"id": NOTE}) is None


class TestCacheObject:
    """Tests for ObjectCache.cache_object."""

    @pytest.mark.asyncio
    async def test_inserts_once(self, session, object_cache, note_doc):
        obj, created = await object_cache.cache_object(session, note_doc(NOTE, BOB), BOB)
        again, created_again = await object_cache.cache_object(session, note_doc(NOTE, BOB), BOB)

        assert created
        assert not created_again
        assert again.id == obj.id
        assert obj.mastodon_id is not None
        assert await session.scalar(select(func.count()).select_from(ObjectRecord)) == 1

    @pytest.mark.asyncio
    async def test_records_provenance(self, session, object_cache, note_doc):
        """Test the relaying actor is kept apart from the original author."""
        obj, _ = await object_cache.cache_object(session, note_doc(NOTE, BOB), RELAY)

        assert obj.original_actor_id == BOB
        assert obj.delivering_actor_id == RELAY

    @pytest.mark.asyncio
    async def test_sanitizes_content(self, session, object_cache, note_doc):
        obj, _ = await object_cache.cache_object(
            session, note_doc(NOTE, BOB, content="<p>hi</p><script>x()</script>"), BOB
        )
        assert obj.properties["content"] == "<p>hi</p>"
        assert obj.to_dict()["id"] == NOTE

    @pytest.mark.asyncio
    async def test_reply_linkage(self, session, object_cache, note_doc):
        obj, _ = await object_cache.cache_object(
            session, note_doc(NOTE, BOB, inReplyTo={"id": "https://social.example/ap/o/1"}), BOB
        )
        assert obj.in_reply_to == "https://social.example/ap/o/1"

    @pytest.mark.asyncio
    async def test_requires_author(self, session, object_cache):
        with pytest.raises(ResolutionError):
            await object_cache.cache_object(session, {"id": NOTE, "type": "Note"}, BOB)
        assert await session.scalar(select(func.count()).select_from(ObjectRecord)) == 0


class TestResolveObject:
    """Tests for ObjectCache.resolve."""

    @pytest.mark.asyncio
    async def test_fetches_once(self, session, object_cache, http, note_doc):
        http.add(NOTE, note_doc(NOTE, BOB))

        obj = await object_cache.resolve(session, NOTE, RELAY)
        again = await object_cache.resolve(session, NOTE, BOB)

        assert obj.original_actor_id == BOB
        assert again.id == obj.id
        assert again.delivering_actor_id == RELAY
        assert http.fetch_count(NOTE) == 1

    @pytest.mark.asyncio
    async def test_not_found(self, session, object_cache):
        with pytest.raises(ResolutionError):
            await object_cache.resolve(session, NOTE, BOB)


class TestLocalNotes:
    """Tests for ObjectCache.create_local_note."""

    @pytest.mark.asyncio
    async def test_public_note(self, session, object_cache, make_actor):
        alice = await make_actor("https://social.example/ap/users/alice", "alice", local=True)

        note = await object_cache.create_local_note(session, alice, "<p>Hello</p><script>x</script>")

        assert note.object_id.startswith("https://social.example/ap/o/")
        assert note.local
        assert note.original_actor_id == alice.actor_id
        assert note.properties["content"] == "<p>Hello</p>"
        entry = await session.scalar(select(OutboxObject).where(OutboxObject.object_id == note.id))
        assert entry.actor_id == alice.id
        assert entry.target == AS_PUBLIC

    @pytest.mark.asyncio
    async def test_followers_only_note(self, session, object_cache, make_actor):
        alice = await make_actor("https://social.example/ap/users/alice", "alice", local=True)

        note = await object_cache.create_local_note(
            session, alice, "quiet", to=[alice.endpoint("followers")], summary="cw"
        )

        entry = await session.scalar(select(OutboxObject).where(OutboxObject.object_id == note.id))
        assert entry.target == alice.endpoint("followers")
        assert note.properties["summary"] == "cw"


class TestObjectBackfill:
    """Tests for lazy mastodon_id backfill on objects."""

    @pytest.mark.asyncio
    async def test_missing_mastodon_id_backfilled(self, session, object_cache, make_actor, make_object):
        bob = await make_actor(BOB, "bob")
        obj = await make_object(NOTE, bob)
        await session.execute(update(ObjectRecord).where(ObjectRecord.id == obj.id).values(mastodon_id=None))
        await session.commit()
        session.expire_all()

        first = await object_cache.get_object_by_id(session, NOTE)
        second = await object_cache.get_object_by_id(session, NOTE)

        assert first.mastodon_id is not None
        assert second.mastodon_id == first.mastodon_id
        assert (await object_cache.get_object_by_mastodon_id(session, first.mastodon_id)).id == obj.id
