"""ActivityPub protocol types and utilities.

This module implements the ActivityPub/ActivityStreams data types the
federation core exchanges with remote servers: the public actor view,
collection pages and the inbound activity variants.

References:
- ActivityPub: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
- Mastodon API: https://docs.joinmastodon.org/spec/activitypub/
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, TypeAlias
from urllib.parse import urlparse

from .errors import ValidationError

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"

# Standard ActivityPub context
AP_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
AP_ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

# Public addressing
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

# Type aliases
JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """Inbound activity types handled by the dispatcher."""
    CREATE = "Create"
    FOLLOW = "Follow"
    UNDO = "Undo"
    LIKE = "Like"
    ANNOUNCE = "Announce"  # Boost/reblog


class ActorType(str, Enum):
    """ActivityPub actor types.

    https://www.w3.org/TR/activitystreams-vocabulary/#actor-types
    """
    PERSON = "Person"
    SERVICE = "Service"
    ORGANIZATION = "Organization"
    GROUP = "Group"
    APPLICATION = "Application"


class ObjectType(str, Enum):
    """ActivityPub object and collection types."""
    NOTE = "Note"
    IMAGE = "Image"
    ORDERED_COLLECTION = "OrderedCollection"
    ORDERED_COLLECTION_PAGE = "OrderedCollectionPage"


ACTOR_TYPES = frozenset(t.value for t in ActorType)


@dataclass
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://social.example/ap/users/alice#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass
class Actor:
    """Public view of an actor.

    Internal fields (admin flag, locally-assigned sequential id, key
    material) live only on the storage record.
    """
    id: str  # https://social.example/ap/users/alice
    type: ActorType = ActorType.PERSON
    preferred_username: str = ""
    name: str = ""
    summary: str = ""
    url: str = ""  # Profile URL
    inbox: str = ""
    outbox: str = ""
    followers: str = ""
    following: str = ""
    public_key: PublicKey | None = None
    icon: JsonDict | None = None  # Avatar
    image: JsonDict | None = None  # Header/banner
    also_known_as: list[str] = field(default_factory=list)
    discoverable: bool = True
    published: str = ""  # ISO timestamp

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name or self.preferred_username,
            "summary": self.summary,
            "url": self.url or self.id,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "discoverable": self.discoverable,
        }

        if self.public_key:
            actor["publicKey"] = self.public_key.to_dict()

        if self.icon:
            actor["icon"] = self.icon

        if self.image:
            actor["image"] = self.image

        if self.also_known_as:
            actor["alsoKnownAs"] = self.also_known_as

        if self.published:
            actor["published"] = self.published

        return actor


@dataclass
class OrderedCollection:
    """ActivityPub OrderedCollection for outbox/followers/following."""
    id: str
    total_items: int = 0
    first: str = ""  # First page URL
    last: str = ""  # Last page URL

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        collection = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION.value,
            "totalItems": self.total_items,
        }

        if self.first:
            collection["first"] = self.first
        if self.last:
            collection["last"] = self.last

        return collection


@dataclass
class OrderedCollectionPage:
    """Page of an OrderedCollection."""
    id: str
    part_of: str  # Parent collection ID
    items: list[str | JsonDict] = field(default_factory=list)
    next: str = ""
    prev: str = ""

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        page = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": ObjectType.ORDERED_COLLECTION_PAGE.value,
            "partOf": self.part_of,
            "orderedItems": self.items,
        }

        if self.next:
            page["next"] = self.next
        if self.prev:
            page["prev"] = self.prev

        return page


# === Inbound activities ===

@dataclass
class InboundActivity:
    """Common envelope of an inbound activity."""
    kind: ClassVar[ActivityType]

    id: str
    actor: str  # Actor ID performing the activity
    object: str | JsonDict  # Target object (ID or inline object)
    target: str | None = None
    published: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)

    @property
    def object_id(self) -> str:
        return get_ap_id(self.object)

    @property
    def is_public(self) -> bool:
        return AS_PUBLIC in self.to or AS_PUBLIC in self.cc


@dataclass
class LikeActivity(InboundActivity):
    kind: ClassVar[ActivityType] = ActivityType.LIKE


@dataclass
class FollowActivity(InboundActivity):
    kind: ClassVar[ActivityType] = ActivityType.FOLLOW


@dataclass
class AnnounceActivity(InboundActivity):
    kind: ClassVar[ActivityType] = ActivityType.ANNOUNCE


@dataclass
class CreateActivity(InboundActivity):
    kind: ClassVar[ActivityType] = ActivityType.CREATE


@dataclass
class UndoActivity(InboundActivity):
    kind: ClassVar[ActivityType] = ActivityType.UNDO


ACTIVITY_VARIANTS: dict[str, type[InboundActivity]] = {
    cls.kind.value: cls
    for cls in (LikeActivity, FollowActivity, AnnounceActivity, CreateActivity, UndoActivity)
}


def as_list(value: Any) -> list[str]:
    """Normalize a JSON-LD string-or-array field to a list of strings."""
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return [value] if isinstance(value, str) else []


def _activity_variant(value: Any) -> type[InboundActivity] | None:
    # JSON-LD allows "type" to be an array; the first handled member wins
    for candidate in as_list(value):
        if candidate in ACTIVITY_VARIANTS:
            return ACTIVITY_VARIANTS[candidate]
    return None


def parse_activity(data: JsonDict) -> InboundActivity | None:
    """Parse an inbound activity into its variant.

    Args:
        data: JSON-LD activity document

    Returns:
        Activity variant, or None if the type is not handled

    Raises:
        ValidationError: If a handled activity lacks actor or object
    """
    variant = _activity_variant(data.get("type"))
    if variant is None:
        return None

    actor = data.get("actor")
    obj = data.get("object")
    if not actor or not obj:
        raise ValidationError(f"{data.get('type')} activity is missing actor or object")

    target = data.get("target")
    return variant(
        id=data.get("id", ""),
        actor=get_ap_id(actor),
        object=obj,
        target=get_ap_id(target) if target else None,
        published=data.get("published", ""),
        to=as_list(data.get("to")),
        cc=as_list(data.get("cc")),
    )


def get_ap_id(value: str | JsonDict) -> str:
    """Return the id of an inline object or the reference itself."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    raise ValidationError(f"Cannot determine id of {value!r}")


def actor_url(base_url: str, username: str) -> str:
    """Canonical URL of a local actor."""
    return f"{base_url}/ap/users/{username}"


def extract_instance_domain(actor_id: str) -> str:
    """Extract instance domain from actor ID.

    Args:
        actor_id: Full actor ID URL (e.g., https://mastodon.social/users/alice)

    Returns:
        Instance domain (e.g., mastodon.social)
    """
    return urlparse(actor_id).hostname or ""


@dataclass(frozen=True)
class Handle:
    """A user@domain account handle; domain is None for local handles."""
    local_part: str
    domain: str | None = None

    @property
    def acct(self) -> str:
        if self.domain is None:
            return self.local_part
        return f"{self.local_part}@{self.domain}"


def parse_handle(value: str) -> Handle:
    """Parse "alice", "@alice", "alice@example.com" or "@alice@example.com"."""
    value = value.strip().lstrip("@")
    if "@" in value:
        local_part, domain = value.split("@", 1)
        return Handle(local_part=local_part, domain=domain.lower())
    return Handle(local_part=value)
