"""Content-negotiated fetching of remote ActivityPub documents.

Implements:
- Actor and object document fetch with sanitization and normalization
- Remote collection traversal (outbox, followers)
- WebFinger discovery (RFC 7033)
"""

import asyncio
from typing import Any
from urllib.parse import urljoin, urlparse

import aiohttp
import structlog

from .activitypub_types import ACTOR_TYPES, AP_ACCEPT_HEADER, JsonDict
from .errors import ResolutionError
from .sanitize import (
    ACTOR_NAME_MAX_LENGTH,
    ACTOR_SUMMARY_MAX_LENGTH,
    ACTOR_USERNAME_MAX_LENGTH,
    clamp,
    get_text_content,
    sanitize_content,
    sanitize_object,
)

logger = structlog.get_logger()

ACTOR_ENDPOINTS = ("inbox", "outbox", "following", "followers")
WEBFINGER_ACTIVITYPUB_TYPES = (
    "application/activity+json",
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"',
)


def _absolute(base: str, value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id") or value.get("href") or value.get("url")
    if not isinstance(value, str) or not value:
        return None
    return urljoin(base, value)


def _image(base: str, value: Any) -> JsonDict | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        value = {"type": "Image", "url": value}
    if not isinstance(value, dict):
        return None
    url = _absolute(base, value.get("url"))
    if url is None:
        return None
    return {**value, "url": url}


def normalize_actor(data: JsonDict) -> JsonDict:
    """Sanitize and normalize a remote actor document.

    Args:
        data: Actor document as returned by the remote server

    Returns:
        New document with sanitized display fields and absolute endpoints

    Raises:
        ResolutionError: If the document lacks a valid id or actor type
    """
    actor_id = data.get("id")
    actor_type = data.get("type")
    if isinstance(actor_type, list):
        actor_type = actor_type[0] if actor_type else None
    if not isinstance(actor_id, str) or not actor_id or not actor_type:
        raise ResolutionError("missing fields on Actor")
    if actor_type not in ACTOR_TYPES:
        raise ResolutionError(f"unsupported actor type: {actor_type}")
    if urlparse(actor_id).scheme not in ("http", "https"):
        raise ResolutionError(f"actor id is not a URL: {actor_id}")

    actor = dict(data)
    actor["type"] = actor_type

    if isinstance(actor.get("summary"), str):
        actor["summary"] = clamp(sanitize_content(actor["summary"]), ACTOR_SUMMARY_MAX_LENGTH)
    if isinstance(actor.get("name"), str):
        actor["name"] = clamp(get_text_content(actor["name"]), ACTOR_NAME_MAX_LENGTH)
    if isinstance(actor.get("preferredUsername"), str):
        actor["preferredUsername"] = clamp(
            get_text_content(actor["preferredUsername"]), ACTOR_USERNAME_MAX_LENGTH
        )

    for endpoint in ACTOR_ENDPOINTS:
        actor[endpoint] = _absolute(actor_id, actor.get(endpoint)) or f"{actor_id}/{endpoint}"

    for key in ("icon", "image"):
        if key in actor:
            image = _image(actor_id, actor[key])
            if image is None:
                actor.pop(key)
            else:
                actor[key] = image

    aliases = actor.get("alsoKnownAs")
    if aliases is not None:
        if not isinstance(aliases, list):
            aliases = [aliases]
        resolved = (_absolute(actor_id, alias) for alias in aliases)
        actor["alsoKnownAs"] = [url for url in resolved if url]

    return actor


class RemoteFetcher:
    """Fetches remote ActivityPub documents."""

    def __init__(
        self,
        user_agent: str = "fedcore/0.1.0",
        timeout_seconds: float = 10.0,
        http_session: Any = None,
    ):
        """Initialize fetcher.

        Args:
            user_agent: User-Agent header value
            timeout_seconds: Total timeout per request
            http_session: Optional aiohttp-compatible session to use
        """
        self.user_agent = user_agent
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

    async def fetch_json(self, url: str, accept: str = AP_ACCEPT_HEADER) -> JsonDict:
        """GET a JSON document.

        Raises:
            ResolutionError: On non-2xx status, transport failure, timeout
                or a body that is not a JSON object
        """
        http = await self._get_http_session()
        try:
            async with http.get(
                url,
                headers={"Accept": accept, "User-Agent": self.user_agent},
                timeout=self.timeout,
            ) as response:
                if not 200 <= response.status < 300:
                    raise ResolutionError(f"{url} returned: {response.status}")
                data = await response.json(content_type=None)
        except ResolutionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ResolutionError(f"Failed to fetch {url}: {e}") from e

        if not isinstance(data, dict):
            raise ResolutionError(f"{url} did not return a JSON object")
        return data

    async def fetch_actor(self, url: str) -> JsonDict:
        """Fetch and normalize a remote actor document."""
        actor = normalize_actor(await self.fetch_json(url))
        if urlparse(actor["id"]).hostname != urlparse(url).hostname:
            raise ResolutionError(f"actor {actor['id']} served from foreign host {url}")
        return actor

    async def fetch_object(self, url: str) -> JsonDict:
        """Fetch and sanitize a remote object document."""
        data = await self.fetch_json(url)
        if not isinstance(data.get("id"), str) or not data.get("type"):
            raise ResolutionError("missing fields on Object")
        return sanitize_object(data)

    async def fetch_collection_items(self, url: str, limit: int) -> list[Any]:
        """Fetch up to ``limit`` items of a remote (Ordered)Collection.

        Follows ``first`` when the collection does not carry its items
        inline.
        """
        collection = await self.fetch_json(url)
        items = collection.get("orderedItems", collection.get("items"))

        if items is None and "first" in collection:
            first = collection["first"]
            if isinstance(first, str):
                first = await self.fetch_json(urljoin(url, first))
            if isinstance(first, dict):
                items = first.get("orderedItems", first.get("items"))

        if not isinstance(items, list):
            logger.debug("Remote collection has no items", url=url)
            return []
        return items[:limit]

    async def query_acct_link(self, domain: str, acct: str) -> str | None:
        """Discover the actor URL for an account via WebFinger.

        Args:
            domain: Domain to query
            acct: Account in user@domain form

        Returns:
            Actor URL, or None if the account has no ActivityPub link
        """
        url = f"https://{domain}/.well-known/webfinger?resource=acct:{acct}"
        try:
            data = await self.fetch_json(url, accept="application/jrd+json")
        except ResolutionError as e:
            logger.warning("WebFinger query failed", acct=acct, error=str(e))
            return None

        for link in data.get("links", []):
            if (
                isinstance(link, dict)
                and link.get("rel") == "self"
                and link.get("type") in WEBFINGER_ACTIVITYPUB_TYPES
                and isinstance(link.get("href"), str)
            ):
                return link["href"]
        return None
