"""fedcore: federation core of an ActivityPub social server.

This package resolves and caches remote actors and objects, processes inbound
activities into relationship edges and notifications, and serves
cursor-paginated collections alongside a minimal Mastodon client API.

Key components:
- activitypub_types: ActivityPub/ActivityStreams protocol types
- config: Pydantic configuration management
- models: SQLAlchemy database models
- ids: Sequential identifier allocation
- fetcher: Remote document fetching and sanitization
- actors / objects: Actor and object caches
- notifications: Notification records and push delivery
- dispatcher: Inbound activity handling
- pagination: Followers, statuses and outbox collections
- main: HTTP server entry point
"""

from .activitypub_types import (
    ActivityType,
    Actor,
    ActorType,
    Handle,
    InboundActivity,
    ObjectType,
    OrderedCollection,
    OrderedCollectionPage,
    PublicKey,
    parse_activity,
    parse_handle,
)
from .actors import ActorCache, add_peer, generate_user_key, get_peers, unwrap_private_key
from .config import DatabaseConfig, FederationConfig, PushConfig, ServerConfig, load_config
from .dispatcher import ActivityDispatcher
from .errors import (
    DeliveryError,
    FederationError,
    NotFoundError,
    ResolutionError,
    StorageError,
    ValidationError,
)
from .fetcher import RemoteFetcher
from .ids import IdentifierAllocator
from .models import (
    ActorFavourite,
    ActorFollowing,
    ActorRecord,
    ActorReblog,
    ActorReply,
    Notification,
    NotificationType,
    ObjectRecord,
    OutboxObject,
    Peer,
    init_db,
)
from .notifications import NotificationEmitter, PushGateway
from .objects import ObjectCache
from .pagination import CollectionPaginator, Page

__version__ = "0.1.0"

__all__ = [
    # Types
    "ActivityType",
    "Actor",
    "ActorType",
    "Handle",
    "InboundActivity",
    "ObjectType",
    "OrderedCollection",
    "OrderedCollectionPage",
    "PublicKey",
    "parse_activity",
    "parse_handle",
    # Config
    "DatabaseConfig",
    "FederationConfig",
    "PushConfig",
    "ServerConfig",
    "load_config",
    # Errors
    "DeliveryError",
    "FederationError",
    "NotFoundError",
    "ResolutionError",
    "StorageError",
    "ValidationError",
    # Caches
    "ActorCache",
    "ObjectCache",
    "RemoteFetcher",
    "IdentifierAllocator",
    "add_peer",
    "generate_user_key",
    "get_peers",
    "unwrap_private_key",
    # Processing
    "ActivityDispatcher",
    "CollectionPaginator",
    "NotificationEmitter",
    "Page",
    "PushGateway",
    # Models
    "ActorFavourite",
    "ActorFollowing",
    "ActorRecord",
    "ActorReblog",
    "ActorReply",
    "Notification",
    "NotificationType",
    "ObjectRecord",
    "OutboxObject",
    "Peer",
    "init_db",
]
