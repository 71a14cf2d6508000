"""Main entry point for the fedcore federation server.

Implements an aiohttp-based HTTP server with:
- Inbox endpoint (/ap/users/{id}/inbox)
- Followers and outbox collections (/ap/users/{id}/followers, /outbox)
- Mastodon client API reads (accounts lookup, followers, statuses)
- Instance metadata (peers, rules)
"""

import asyncio
import json
import logging
import signal
from typing import Any

import structlog
from aiohttp import web

from .activitypub_types import AP_CONTENT_TYPE, actor_url, parse_handle
from .actors import ActorCache, get_peers
from .config import ServerConfig, load_config
from .dispatcher import ActivityDispatcher
from .errors import NotFoundError, StorageError
from .fetcher import RemoteFetcher
from .ids import IdentifierAllocator
from .mastodon import to_mastodon_account, to_mastodon_status
from .models import ActorRecord, init_db
from .notifications import NotificationEmitter, PushGateway
from .objects import ObjectCache
from .pagination import CollectionPaginator
from .server_settings import get_rules

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    """Configure stdlib logging and structlog with JSON output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class ActivityPubServer:
    """Federation server wiring caches, dispatcher and paginator to HTTP."""

    def __init__(self, config: ServerConfig, http_session: Any = None):
        """Initialize server.

        Args:
            config: Server configuration
            http_session: Optional aiohttp-compatible session for remote
                fetches and push delivery
        """
        self.config = config
        self.http_session = http_session
        self.app = web.Application()
        self.session_maker = None
        self.fetcher = None
        self.push_gateway = None
        self.notifications = None
        self.actors = None
        self.objects = None
        self.dispatcher = None
        self.paginator = None

    async def setup(self) -> None:
        """Set up server components."""
        federation = self.config.federation

        # Initialize database
        self.session_maker = await init_db(self.config.database.url)

        # Initialize services
        self.fetcher = RemoteFetcher(
            user_agent=federation.user_agent,
            timeout_seconds=federation.fetch_timeout_seconds,
            http_session=self.http_session,
        )
        allocator = IdentifierAllocator(self.session_maker)

        if self.config.push.gateway_url:
            self.push_gateway = PushGateway(
                gateway_url=self.config.push.gateway_url,
                timeout_seconds=self.config.push.timeout_seconds,
                http_session=self.http_session,
            )
        self.notifications = NotificationEmitter(self.push_gateway)

        self.actors = ActorCache(
            fetcher=self.fetcher,
            allocator=allocator,
            base_url=federation.base_url,
            domain=federation.domain,
            user_kek=federation.user_kek,
        )
        self.objects = ObjectCache(
            fetcher=self.fetcher,
            allocator=allocator,
            base_url=federation.base_url,
        )
        self.dispatcher = ActivityDispatcher(self.actors, self.objects, self.notifications)
        self.paginator = CollectionPaginator(self.actors, self.objects, self.fetcher, federation)

        # Set up routes
        self._setup_routes()

        # Store services in app for handlers
        self.app["config"] = self.config
        self.app["session_maker"] = self.session_maker
        self.app["actors"] = self.actors
        self.app["dispatcher"] = self.dispatcher
        self.app["paginator"] = self.paginator

        logger.info(
            "Server setup complete",
            domain=federation.domain,
            base_url=federation.base_url,
        )

    async def cleanup(self) -> None:
        """Clean up server resources."""
        if self.notifications:
            await self.notifications.drain()
        if self.push_gateway:
            await self.push_gateway.close()
        if self.fetcher:
            await self.fetcher.close()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/ap/users/{id}", handle_actor)
        self.app.router.add_post("/ap/users/{id}/inbox", handle_inbox)
        self.app.router.add_get("/ap/users/{id}/followers", handle_followers)
        self.app.router.add_get("/ap/users/{id}/followers/page", handle_followers_page)
        self.app.router.add_get("/ap/users/{id}/outbox", handle_outbox)
        self.app.router.add_get("/ap/users/{id}/outbox/page", handle_outbox_page)

        self.app.router.add_get("/api/v1/accounts/lookup", handle_account_lookup)
        self.app.router.add_get("/api/v1/accounts/{id}/followers", handle_account_followers)
        self.app.router.add_get("/api/v1/accounts/{id}/statuses", handle_account_statuses)
        self.app.router.add_get("/api/v1/instance/peers", handle_instance_peers)
        self.app.router.add_get("/api/v1/instance/rules", handle_instance_rules)

        # Health check
        self.app.router.add_get("/health", handle_health)

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.federation.host,
            self.config.federation.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.federation.host,
            port=self.config.federation.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        await self.cleanup()
        await runner.cleanup()


# === Helpers ===

def _int_param(request: web.Request, name: str) -> int | None:
    value = request.query.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _bool_param(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() == "true"


def _page_link(request: web.Request, **cursor: int) -> str:
    query = {k: v for k, v in request.query.items() if k not in ("max_id", "min_id")}
    query.update({k: str(v) for k, v in cursor.items()})
    return str(request.url.with_query(query))


def _not_found(message: str) -> web.Response:
    return web.json_response({"error": message}, status=404)


async def _local_actor(request: web.Request, session) -> ActorRecord | None:
    config = request.app["config"]
    actor_id = actor_url(config.federation.base_url, request.match_info["id"])
    return await request.app["actors"].get_actor_by_id(session, actor_id)


# === ActivityPub handlers ===

async def handle_actor(request: web.Request) -> web.Response:
    """Handle actor document request."""
    async with request.app["session_maker"]() as session:
        actor = await _local_actor(request, session)
        if actor is None:
            return _not_found("Actor not found")
        document = actor.to_actor().to_dict()

    return web.json_response(document, content_type=AP_CONTENT_TYPE)


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities.

    The delivering server always gets an empty 200 unless storage fails;
    rejections are only logged.
    """
    try:
        activity_data = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "Invalid JSON"}, status=400)
    if not isinstance(activity_data, dict):
        return web.json_response({"error": "Invalid activity"}, status=400)

    logger.info(
        "Received inbox activity",
        username=request.match_info["id"],
        activity_type=activity_data.get("type"),
        activity_id=activity_data.get("id"),
    )

    # TODO: Verify HTTP signature before dispatching

    async with request.app["session_maker"]() as session:
        try:
            await request.app["dispatcher"].dispatch(session, activity_data)
        except StorageError as e:
            logger.error("Inbox processing error", error=str(e))
            return web.json_response({"error": "storage failure"}, status=500)

    return web.Response(status=200)


async def handle_followers(request: web.Request) -> web.Response:
    """Handle followers collection request."""
    async with request.app["session_maker"]() as session:
        actor = await _local_actor(request, session)
        if actor is None:
            return _not_found("Actor not found")
        result = await request.app["paginator"].followers_collection(session, actor)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


async def handle_followers_page(request: web.Request) -> web.Response:
    """Handle followers collection page request."""
    max_id = _int_param(request, "max_id")
    min_id = _int_param(request, "min_id")

    async with request.app["session_maker"]() as session:
        actor = await _local_actor(request, session)
        if actor is None:
            return _not_found("Actor not found")
        result = await request.app["paginator"].followers_page(session, actor, max_id, min_id)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


async def handle_outbox(request: web.Request) -> web.Response:
    """Handle outbox collection request."""
    async with request.app["session_maker"]() as session:
        actor = await _local_actor(request, session)
        if actor is None:
            return _not_found("Actor not found")
        result = await request.app["paginator"].outbox_collection(session, actor)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


async def handle_outbox_page(request: web.Request) -> web.Response:
    """Handle outbox collection page request."""
    max_id = _int_param(request, "max_id")
    min_id = _int_param(request, "min_id")

    async with request.app["session_maker"]() as session:
        actor = await _local_actor(request, session)
        if actor is None:
            return _not_found("Actor not found")
        result = await request.app["paginator"].outbox_page(session, actor, max_id, min_id)

    return web.json_response(result, content_type=AP_CONTENT_TYPE)


# === Mastodon client API handlers ===

async def handle_account_lookup(request: web.Request) -> web.Response:
    """Handle account lookup by acct."""
    acct = request.query.get("acct", "")
    if not acct:
        return _not_found("Missing acct parameter")

    async with request.app["session_maker"]() as session:
        actor = await request.app["actors"].lookup_handle(session, parse_handle(acct))
        if actor is None:
            return _not_found(f"Account not found: {acct}")
        account = to_mastodon_account(actor)

    return web.json_response(account)


async def handle_account_followers(request: web.Request) -> web.Response:
    """Handle followers of an account, addressed by its mastodon_id."""
    limit = _int_param(request, "limit")
    max_id = _int_param(request, "max_id")
    min_id = _int_param(request, "min_id")

    async with request.app["session_maker"]() as session:
        actor = await request.app["actors"].get_actor_by_mastodon_id(session, request.match_info["id"])
        if actor is None:
            return _not_found("Account not found")
        page = await request.app["paginator"].followers(session, actor, limit, max_id, min_id)
        accounts = [to_mastodon_account(follower) for follower in page.items]

    links = []
    if page.next_cursor is not None:
        links.append(f'<{_page_link(request, max_id=page.next_cursor)}>; rel="next"')
    if page.prev_cursor is not None:
        links.append(f'<{_page_link(request, min_id=page.prev_cursor)}>; rel="prev"')
    headers = {"Link": ", ".join(links)} if links else None

    return web.json_response(accounts, headers=headers)


async def handle_account_statuses(request: web.Request) -> web.Response:
    """Handle statuses of an account, addressed by its handle."""
    config = request.app["config"]
    handle = parse_handle(request.match_info["id"])
    limit = _int_param(request, "limit")

    async with request.app["session_maker"]() as session:
        try:
            objects = await request.app["paginator"].statuses(
                session,
                handle,
                limit=limit,
                max_id=request.query.get("max_id") or None,
                exclude_replies=_bool_param(request, "exclude_replies"),
                pinned=_bool_param(request, "pinned"),
            )
        except NotFoundError as e:
            return _not_found(str(e))

        statuses = []
        for obj in objects:
            status = await to_mastodon_status(session, obj, config.federation.domain)
            if status is None:
                logger.warning("Dropping status without cached author", object_id=obj.object_id)
                continue
            statuses.append(status)

    return web.json_response(statuses)


async def handle_instance_peers(request: web.Request) -> web.Response:
    """List known peer domains."""
    async with request.app["session_maker"]() as session:
        peers = await get_peers(session)
    return web.json_response(peers)


async def handle_instance_rules(request: web.Request) -> web.Response:
    """List instance rules."""
    async with request.app["session_maker"]() as session:
        rules = await get_rules(session)
        result = [{"id": str(rule.id), "text": rule.text} for rule in rules]
    return web.json_response(result)


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


def main() -> None:
    """Main entry point."""
    config = load_config()
    configure_logging(config.log_level)

    server = ActivityPubServer(config)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
