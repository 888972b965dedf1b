"""Per-conversation lease: owner token + expiry + fencing counter.

Acquisition never blocks. A holder that crashes is cut off by the TTL, and
release only clears a lease the caller still owns.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import redis
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation, ConversationLease

logger = get_logger("lock_service")

_redis_client: Optional[redis.Redis] = None

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class Lease:
    conversation_id: UUID
    owner: str
    fence: int
    expires_at: datetime


def _new_owner_token() -> str:
    return uuid.uuid4().hex


class LockUnavailableError(Exception):
    """The lease store could not be reached; treat the conversation as locked."""


class LockStore(ABC):
    @abstractmethod
    def acquire(self, conversation_id: UUID, ttl_seconds: Optional[int] = None) -> Optional[Lease]:
        """Take the lease iff absent or expired. Returns None when busy.

        Raises LockUnavailableError when the backing store is down.
        """

    @abstractmethod
    def release(self, lease: Lease) -> bool:
        """Clear the lease if ``lease`` still owns it."""

    @abstractmethod
    def is_current(self, lease: Lease) -> bool:
        """True while ``lease`` is unexpired and not superseded."""


class DatabaseLockStore(LockStore):
    """One ``conversation_leases`` row per conversation, taken with a conditional UPDATE.

    The row is created on first use; the fence survives release so a later
    holder always sees a higher value.
    """

    def __init__(self, db: Session):
        self.db = db

    def _take(self, conversation_id: UUID, owner: str, expires_at: datetime, now: datetime) -> int:
        return (
            self.db.query(ConversationLease)
            .filter(
                ConversationLease.conversation_id == conversation_id,
                or_(
                    ConversationLease.owner.is_(None),
                    ConversationLease.expires_at.is_(None),
                    ConversationLease.expires_at < now,
                ),
            )
            .update(
                {
                    "owner": owner,
                    "expires_at": expires_at,
                    "fence": ConversationLease.fence + 1,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )

    def _create(self, conversation_id: UUID, owner: str, expires_at: datetime, now: datetime) -> bool:
        exists = self.db.query(Conversation.id).filter(Conversation.id == conversation_id).first()
        if exists is None:
            return False
        self.db.add(
            ConversationLease(
                conversation_id=conversation_id,
                owner=owner,
                expires_at=expires_at,
                fence=1,
                updated_at=now,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            # another worker created the row first and holds the lease
            self.db.rollback()
            return False
        return True

    def acquire(self, conversation_id: UUID, ttl_seconds: Optional[int] = None) -> Optional[Lease]:
        ttl = ttl_seconds or settings.lock_ttl_seconds
        now = datetime.now(timezone.utc)
        owner = _new_owner_token()
        expires_at = now + timedelta(seconds=ttl)

        updated = self._take(conversation_id, owner, expires_at, now)
        self.db.commit()
        if updated == 0:
            row = (
                self.db.query(ConversationLease.conversation_id)
                .filter(ConversationLease.conversation_id == conversation_id)
                .first()
            )
            if row is not None or not self._create(conversation_id, owner, expires_at, now):
                return None

        fence = (
            self.db.query(ConversationLease.fence)
            .filter(ConversationLease.conversation_id == conversation_id, ConversationLease.owner == owner)
            .scalar()
        )
        if fence is None:
            return None
        return Lease(conversation_id=conversation_id, owner=owner, fence=fence, expires_at=expires_at)

    def release(self, lease: Lease) -> bool:
        updated = (
            self.db.query(ConversationLease)
            .filter(ConversationLease.conversation_id == lease.conversation_id, ConversationLease.owner == lease.owner)
            .update({"owner": None, "expires_at": None}, synchronize_session=False)
        )
        self.db.commit()
        if updated == 0:
            logger.warning(
                "Lease already gone on release",
                extra={"context": {"conversation_id": str(lease.conversation_id), "fence": lease.fence}},
            )
        return updated > 0

    def is_current(self, lease: Lease) -> bool:
        now = datetime.now(timezone.utc)
        found = (
            self.db.query(ConversationLease.conversation_id)
            .filter(
                ConversationLease.conversation_id == lease.conversation_id,
                ConversationLease.owner == lease.owner,
                ConversationLease.fence == lease.fence,
                ConversationLease.expires_at > now,
            )
            .first()
        )
        return found is not None

    def clear_expired(self) -> int:
        now = datetime.now(timezone.utc)
        updated = (
            self.db.query(ConversationLease)
            .filter(ConversationLease.owner.isnot(None), ConversationLease.expires_at < now)
            .update({"owner": None, "expires_at": None}, synchronize_session=False)
        )
        self.db.commit()
        return updated


class RedisLockStore(LockStore):
    """SET NX PX lease with a compare-and-delete release script.

    Connection errors on acquire surface as LockUnavailableError. On release
    they are logged and the TTL clears the key.
    """

    def __init__(self, client: redis.Redis, prefix: str = "leadpilot:lock"):
        self.client = client
        self.prefix = prefix

    def _key(self, conversation_id: UUID) -> str:
        return f"{self.prefix}:{conversation_id}"

    def acquire(self, conversation_id: UUID, ttl_seconds: Optional[int] = None) -> Optional[Lease]:
        ttl = ttl_seconds or settings.lock_ttl_seconds
        key = self._key(conversation_id)
        owner = _new_owner_token()
        try:
            if not self.client.set(key, owner, nx=True, px=ttl * 1000):
                return None
            fence = int(self.client.incr(f"{key}:fence"))
        except redis.RedisError as e:
            raise LockUnavailableError(str(e)) from e
        return Lease(
            conversation_id=conversation_id,
            owner=owner,
            fence=fence,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
        )

    def release(self, lease: Lease) -> bool:
        try:
            released = self.client.eval(_RELEASE_SCRIPT, 1, self._key(lease.conversation_id), lease.owner)
        except redis.RedisError as e:
            logger.error(
                "Lease release failed, leaving it to expire",
                extra={"context": {"conversation_id": str(lease.conversation_id), "error": str(e)}},
            )
            return False
        return bool(released)

    def is_current(self, lease: Lease) -> bool:
        try:
            return self.client.get(self._key(lease.conversation_id)) == lease.owner
        except redis.RedisError as e:
            logger.warning(
                "Lease check failed, treating lease as lost",
                extra={"context": {"conversation_id": str(lease.conversation_id), "error": str(e)}},
            )
            return False


def get_redis_client() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
    return _redis_client


def get_lock_store(db: Session) -> LockStore:
    if settings.lock_backend == "redis":
        return RedisLockStore(get_redis_client())
    return DatabaseLockStore(db)
