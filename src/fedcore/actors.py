"""Actor cache and local actor provisioning.

Implements:
- Resolution of remote actors with fetch-and-insert-at-most-once semantics
- Local actor creation with wrapped key material
- Owner-authorized actor property updates
- Known peer bookkeeping
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .activitypub_types import Handle, actor_url, extract_instance_domain
from .errors import ResolutionError, ValidationError
from .fetcher import ACTOR_ENDPOINTS, RemoteFetcher
from .ids import IdentifierAllocator
from .models import ActorRecord, Peer, dialect_insert

logger = structlog.get_logger()

KEY_SALT_BYTES = 16
KEY_NONCE_BYTES = 12
KEK_ITERATIONS = 100_000


@dataclass
class UserKeyPair:
    """RSA key pair with the private half wrapped under a KEK."""
    public_key_pem: str
    wrapped_private_key: bytes  # nonce || AES-GCM ciphertext of PKCS8 DER
    salt: bytes


def _derive_wrapping_key(kek: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KEK_ITERATIONS,
    )
    return kdf.derive(kek.encode())


def generate_user_key(kek: str) -> UserKeyPair:
    """Generate an RSA key pair for HTTP signatures, wrapping the private key.

    Args:
        kek: Key-encryption key from configuration

    Returns:
        UserKeyPair with PEM public key and wrapped private key
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )

    private_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    salt = os.urandom(KEY_SALT_BYTES)
    nonce = os.urandom(KEY_NONCE_BYTES)
    ciphertext = AESGCM(_derive_wrapping_key(kek, salt)).encrypt(nonce, private_der, None)

    return UserKeyPair(
        public_key_pem=public_pem,
        wrapped_private_key=nonce + ciphertext,
        salt=salt,
    )


def unwrap_private_key(kek: str, wrapped: bytes, salt: bytes) -> rsa.RSAPrivateKey:
    """Recover a private key produced by generate_user_key."""
    nonce, ciphertext = wrapped[:KEY_NONCE_BYTES], wrapped[KEY_NONCE_BYTES:]
    private_der = AESGCM(_derive_wrapping_key(kek, salt)).decrypt(nonce, ciphertext, None)
    return serialization.load_der_private_key(private_der, password=None)


async def add_peer(session: AsyncSession, domain: str) -> None:
    """Record a remote server origin; no-op if already known."""
    stmt = dialect_insert(session, Peer).values(
        domain=domain, created_at=datetime.now(timezone.utc)
    ).on_conflict_do_nothing(index_elements=[Peer.domain])
    await session.execute(stmt)


async def get_peers(session: AsyncSession) -> list[str]:
    """List known peer domains."""
    result = await session.execute(select(Peer.domain).order_by(Peer.domain))
    return list(result.scalars().all())


class ActorCache:
    """Local store of actors, fetching remote ones on first use."""

    def __init__(
        self,
        fetcher: RemoteFetcher,
        allocator: IdentifierAllocator,
        base_url: str,
        domain: str,
        user_kek: str,
    ):
        """Initialize actor cache.

        Args:
            fetcher: Remote document fetcher
            allocator: Sequential identifier allocator
            base_url: Server base URL (e.g., https://social.example)
            domain: Domain of local actors
            user_kek: Key-encryption key for local private keys
        """
        self.fetcher = fetcher
        self.allocator = allocator
        self.base_url = base_url.rstrip("/")
        self.domain = domain
        self.user_kek = user_kek

    def is_local(self, actor: ActorRecord) -> bool:
        return actor.is_local or urlparse(actor.actor_id).hostname == self.domain

    # === Lookups ===

    async def get_actor_by_id(self, session: AsyncSession, actor_id: str) -> ActorRecord | None:
        """Get a stored actor by canonical ID, backfilling its mastodon_id.

        Args:
            session: Database session
            actor_id: Canonical actor URL

        Returns:
            ActorRecord if stored, None otherwise
        """
        result = await session.execute(
            select(ActorRecord).where(ActorRecord.actor_id == actor_id)
        )
        actor = result.scalar_one_or_none()
        if actor is not None and actor.mastodon_id is None:
            actor = await self._backfill_mastodon_id(session, actor)
        return actor

    async def get_actor_by_mastodon_id(
        self,
        session: AsyncSession,
        mastodon_id: str,
    ) -> ActorRecord | None:
        result = await session.execute(
            select(ActorRecord).where(ActorRecord.mastodon_id == mastodon_id)
        )
        return result.scalar_one_or_none()

    async def _backfill_mastodon_id(self, session: AsyncSession, actor: ActorRecord) -> ActorRecord:
        # Whoever updates first wins; later callers re-read the winner's value
        created_at = actor.created_at.replace(tzinfo=timezone.utc)
        mastodon_id = await self.allocator.allocate("actors", created_at)
        await session.execute(
            update(ActorRecord)
            .where(ActorRecord.id == actor.id, ActorRecord.mastodon_id.is_(None))
            .values(mastodon_id=mastodon_id)
        )
        await session.commit()
        await session.refresh(actor)
        return actor

    # === Remote resolution ===

    async def resolve(self, session: AsyncSession, actor_id: str) -> ActorRecord:
        """Get an actor, fetching and caching it if unknown.

        Concurrent resolutions of the same ID may both fetch; the insert is
        ignored on conflict and both converge on the single stored row.

        Args:
            session: Database session
            actor_id: Canonical actor URL

        Returns:
            Persisted ActorRecord

        Raises:
            ResolutionError: If the actor cannot be fetched or is malformed
        """
        existing = await self.get_actor_by_id(session, actor_id)
        if existing is not None:
            return existing
        if urlparse(actor_id).hostname == self.domain:
            raise ResolutionError(f"Unknown local actor: {actor_id}")

        document = await self.fetcher.fetch_actor(actor_id)
        canonical_id = document["id"]
        if canonical_id != actor_id:
            existing = await self.get_actor_by_id(session, canonical_id)
            if existing is not None:
                return existing

        now = datetime.now(timezone.utc)
        mastodon_id = await self.allocator.allocate("actors", now)

        public_key = document.get("publicKey")
        public_key_pem = public_key.get("publicKeyPem") if isinstance(public_key, dict) else None
        properties = {
            key: value for key, value in document.items()
            if key not in ("@context", "id", "type", "publicKey")
        }

        stmt = dialect_insert(session, ActorRecord).values(
            actor_id=canonical_id,
            type=document["type"],
            mastodon_id=mastodon_id,
            properties=properties,
            public_key_pem=public_key_pem,
            is_admin=False,
            created_at=now,
        ).on_conflict_do_nothing(
            index_elements=[ActorRecord.actor_id]
        ).returning(ActorRecord.id)
        inserted = (await session.execute(stmt)).scalar_one_or_none()
        await add_peer(session, extract_instance_domain(canonical_id))
        await session.commit()

        if inserted is not None:
            logger.info("Cached remote actor", actor_id=canonical_id)

        actor = await self.get_actor_by_id(session, canonical_id)
        if actor is None:
            raise ResolutionError(f"Actor {canonical_id} vanished after insert")
        return actor

    async def lookup_handle(self, session: AsyncSession, handle: Handle) -> ActorRecord | None:
        """Find an actor by account handle.

        Local handles are looked up directly; remote handles go through
        WebFinger discovery and are cached.

        Returns:
            ActorRecord, or None if the account cannot be found
        """
        if handle.domain is None or handle.domain == self.domain:
            return await self.get_actor_by_id(session, actor_url(self.base_url, handle.local_part))

        link = await self.fetcher.query_acct_link(handle.domain, handle.acct)
        if link is None:
            logger.warning("No ActivityPub link for handle", acct=handle.acct)
            return None
        try:
            return await self.resolve(session, link)
        except ResolutionError as e:
            logger.warning("Failed to resolve handle", acct=handle.acct, error=str(e))
            return None

    # === Local actors ===

    async def create_local(
        self,
        session: AsyncSession,
        email: str,
        properties: dict[str, Any] | None = None,
        admin: bool = False,
    ) -> ActorRecord:
        """Provision a local Person.

        Args:
            session: Database session
            email: Account email; its local part is the default username
            properties: Optional initial properties (name, summary, ...)
            admin: Whether the actor is an administrator

        Returns:
            Persisted ActorRecord

        Raises:
            ValidationError: If preferredUsername is not a string
        """
        properties = dict(properties or {})
        if "preferredUsername" not in properties:
            properties["preferredUsername"] = email.split("@")[0]

        username = properties["preferredUsername"]
        if not isinstance(username, str):
            raise ValidationError(
                f"preferredUsername should be a string, received {username!r} instead"
            )

        actor_id = actor_url(self.base_url, username)
        for endpoint in ACTOR_ENDPOINTS:
            properties.setdefault(endpoint, f"{actor_id}/{endpoint}")

        key_pair = generate_user_key(self.user_kek)
        now = datetime.now(timezone.utc)
        mastodon_id = await self.allocator.allocate("actors", now)

        actor = ActorRecord(
            actor_id=actor_id,
            type="Person",
            mastodon_id=mastodon_id,
            email=email,
            properties=properties,
            public_key_pem=key_pair.public_key_pem,
            private_key=key_pair.wrapped_private_key,
            private_key_salt=key_pair.salt,
            is_admin=admin,
            created_at=now,
        )
        session.add(actor)
        await session.commit()

        logger.info("Created local actor", actor_id=actor_id, admin=admin)

        return actor

    async def update_actor_property(
        self,
        session: AsyncSession,
        actor_id: str,
        key: str,
        value: Any,
    ) -> ActorRecord:
        """Set a named property on an actor.

        Raises:
            ValidationError: If the actor is unknown
        """
        actor = await self.get_actor_by_id(session, actor_id)
        if actor is None:
            raise ValidationError(f"Unknown actor: {actor_id}")

        # Reassign so the JSON column is flagged dirty
        actor.properties = {**actor.properties, key: value}
        await session.commit()
        return actor

    async def set_actor_alias(self, session: AsyncSession, actor_id: str, alias: str) -> ActorRecord:
        """Replace an actor's alias list with a single alias (account migration)."""
        return await self.update_actor_property(session, actor_id, "alsoKnownAs", [alias])
