"""Tests for notification recording and push delivery."""

import aiohttp
import pytest
from sqlalchemy import select
from structlog.testing import capture_logs

from fedcore.errors import DeliveryError
from fedcore.models import Notification, NotificationType
from fedcore.notifications import NotificationEmitter, PushGateway, build_push_payload

ALICE = "https://social.example/ap/users/alice"
BOB = "https://remote.example/users/bob"
GATEWAY = "https://push.example/send"


class TestBuildPushPayload:
    """Tests for push payload construction."""

    @pytest.mark.asyncio
    async def test_favourite_payload(self, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        note = await make_object("https://social.example/ap/o/1", alice, local=True)

        payload = build_push_payload(7, NotificationType.FAVOURITE, alice, bob, note)

        assert payload["notification_id"] == "7"
        assert payload["notification_type"] == "favourite"
        assert payload["title"] == "Bob favourited your status"
        assert payload["object"] == note.object_id

    @pytest.mark.asyncio
    async def test_follow_payload_has_no_object(self, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")

        payload = build_push_payload(1, NotificationType.FOLLOW, alice, bob, None)

        assert payload["title"] == "Bob followed you"
        assert "object" not in payload


class TestPushGateway:
    """Tests for PushGateway."""

    @pytest.mark.asyncio
    async def test_send(self, http):
        gateway = PushGateway(GATEWAY, http_session=http)
        await gateway.send({"title": "hi"})
        assert http.posts == [(GATEWAY, {"title": "hi"})]

    @pytest.mark.asyncio
    async def test_rejected_request(self, http):
        http.post_status = 500
        gateway = PushGateway(GATEWAY, http_session=http)
        with pytest.raises(DeliveryError):
            await gateway.send({"title": "hi"})

    @pytest.mark.asyncio
    async def test_transport_error(self):
        class FailingSession:
            closed = False

            def post(self, url, json=None, timeout=None):
                raise aiohttp.ClientConnectionError("refused")

        gateway = PushGateway(GATEWAY, http_session=FailingSession())
        with pytest.raises(DeliveryError):
            await gateway.send({"title": "hi"})


class TestNotificationEmitter:
    """Tests for NotificationEmitter."""

    @pytest.mark.asyncio
    async def test_emit_persists_with_caller_commit(self, session, make_actor, make_object):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        note = await make_object("https://social.example/ap/o/1", alice, local=True)
        emitter = NotificationEmitter()

        notification_id = await emitter.emit(session, NotificationType.FAVOURITE, alice, bob, note)
        await session.commit()

        notification = await session.get(Notification, notification_id)
        assert notification.type == NotificationType.FAVOURITE
        assert notification.actor_id == alice.id
        assert notification.from_actor_id == bob.id
        assert notification.object_id == note.id

    @pytest.mark.asyncio
    async def test_emit_rolled_back_with_caller(self, session, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")

        await NotificationEmitter().emit(session, NotificationType.FOLLOW, alice, bob)
        await session.rollback()

        assert (await session.execute(select(Notification))).first() is None

    @pytest.mark.asyncio
    async def test_delivery_requested_for_local_recipient(self, http, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        emitter = NotificationEmitter(PushGateway(GATEWAY, http_session=http))

        emitter.request_delivery(3, NotificationType.FOLLOW, alice, bob)
        await emitter.drain()

        assert len(http.posts) == 1
        assert http.posts[0][1]["recipient"] == ALICE

    @pytest.mark.asyncio
    async def test_no_delivery_for_remote_recipient(self, http, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        emitter = NotificationEmitter(PushGateway(GATEWAY, http_session=http))

        emitter.request_delivery(3, NotificationType.FOLLOW, bob, alice)
        await emitter.drain()

        assert http.posts == []

    @pytest.mark.asyncio
    async def test_delivery_failure_is_logged_not_raised(self, http, make_actor):
        alice = await make_actor(ALICE, "alice", local=True)
        bob = await make_actor(BOB, "bob")
        http.post_status = 503
        emitter = NotificationEmitter(PushGateway(GATEWAY, http_session=http))

        with capture_logs() as logs:
            emitter.request_delivery(4, NotificationType.FOLLOW, alice, bob)
            await emitter.drain()

        failures = [log for log in logs if log["event"] == "Push delivery failed"]
        assert len(failures) == 1
        assert failures[0]["log_level"] == "error"
        assert failures[0]["notification_id"] == "4"
