"""In-app notifications and best-effort push delivery."""

import asyncio
from typing import Any

import aiohttp
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DeliveryError
from .models import ActorRecord, Notification, NotificationType, ObjectRecord

logger = structlog.get_logger()

NOTIFICATION_TITLES = {
    NotificationType.FAVOURITE: "{name} favourited your status",
    NotificationType.FOLLOW: "{name} followed you",
    NotificationType.REBLOG: "{name} boosted your status",
    NotificationType.MENTION: "{name} mentioned you",
}


def build_push_payload(
    notification_id: int,
    kind: NotificationType,
    recipient: ActorRecord,
    origin: ActorRecord,
    subject: ObjectRecord | None,
) -> dict[str, Any]:
    """Build the JSON body sent to the push gateway."""
    name = origin.properties.get("name") or origin.preferred_username or origin.actor_id
    payload: dict[str, Any] = {
        "notification_id": str(notification_id),
        "notification_type": kind.value,
        "recipient": recipient.actor_id,
        "origin": origin.actor_id,
        "title": NOTIFICATION_TITLES[kind].format(name=name),
        "icon": (origin.properties.get("icon") or {}).get("url"),
    }
    if subject is not None:
        payload["object"] = subject.object_id
        payload["body"] = subject.properties.get("content", "")
    return payload


class PushGateway:
    """Posts push delivery requests to an external gateway."""

    def __init__(self, gateway_url: str, timeout_seconds: float = 5.0, http_session: Any = None):
        self.gateway_url = gateway_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._http_session = http_session
        self._owns_session = http_session is None

    async def _get_http_session(self) -> Any:
        """Get or create HTTP session."""
        if self._http_session is None or (self._owns_session and self._http_session.closed):
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def send(self, payload: dict[str, Any]) -> None:
        """Send one delivery request.

        Raises:
            DeliveryError: If the gateway cannot be reached or refuses it
        """
        http = await self._get_http_session()
        try:
            async with http.post(self.gateway_url, json=payload, timeout=self.timeout) as response:
                if response.status not in (200, 201, 202, 204):
                    error = await response.text()
                    raise DeliveryError(f"HTTP {response.status}: {error[:100]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(str(e)) from e


class NotificationEmitter:
    """Records notifications and requests their delivery."""

    def __init__(self, push_gateway: PushGateway | None = None):
        """Initialize emitter.

        Args:
            push_gateway: Delivery transport; None disables push delivery
        """
        self.push_gateway = push_gateway
        self._tasks: set[asyncio.Task] = set()

    async def emit(
        self,
        session: AsyncSession,
        kind: NotificationType,
        recipient: ActorRecord,
        origin: ActorRecord,
        subject: ObjectRecord | None = None,
    ) -> int:
        """Persist a notification within the caller's transaction.

        The caller commits, so the row lands atomically with the edge that
        triggered it.

        Returns:
            Notification ID
        """
        notification = Notification(
            type=kind,
            actor_id=recipient.id,
            from_actor_id=origin.id,
            object_id=subject.id if subject is not None else None,
        )
        session.add(notification)
        await session.flush()
        return notification.id

    def request_delivery(
        self,
        notification_id: int,
        kind: NotificationType,
        recipient: ActorRecord,
        origin: ActorRecord,
        subject: ObjectRecord | None = None,
    ) -> None:
        """Schedule push delivery for a committed notification.

        Fire-and-forget: failures are logged by the delivery task and never
        reach the caller.
        """
        if self.push_gateway is None or not recipient.is_local:
            return

        payload = build_push_payload(notification_id, kind, recipient, origin, subject)
        task = asyncio.create_task(self._deliver(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            await self.push_gateway.send(payload)
            logger.debug("Delivered push notification", notification_id=payload["notification_id"])
        except Exception as e:
            logger.error(
                "Push delivery failed",
                notification_id=payload["notification_id"],
                recipient=payload["recipient"],
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for outstanding delivery tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
