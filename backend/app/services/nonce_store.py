"""
nonce_store.py
- Single-use sign-in nonces with expiry, kept outside the process so every
  API instance sees the same state.
- RedisNonceStore: expiry stored as the key value, consumption claimed with SET NX.
- SqlNonceStore: auth_nonces table, consumption claimed with a conditional UPDATE.
"""
import enum
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from redis.exceptions import RedisError
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from app.config import settings
from app.models.nonce import AuthNonce

logger = logging.getLogger(__name__)

NONCE_BYTES = 16  # 128 bits, 32 hex chars

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_ms(dt: datetime) -> int:
    return int(_as_utc(dt).timestamp() * 1000)


@dataclass(frozen=True)
class Nonce:
    value: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False


class ConsumeResult(str, enum.Enum):
    OK = "ok"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class NonceStoreError(Exception):
    """The backing store could not be reached or returned an error."""


class NonceStore(ABC):
    def __init__(
        self,
        ttl_seconds: int = None,
        retention_seconds: int = None,
        clock: Clock = utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.NONCE_TTL_SECONDS)
        self.retention = timedelta(
            seconds=retention_seconds if retention_seconds is not None else settings.NONCE_RETENTION_SECONDS
        )
        self.clock = clock

    def _new_nonce(self) -> Nonce:
        now = self.clock()
        return Nonce(value=secrets.token_hex(NONCE_BYTES), issued_at=now, expires_at=now + self.ttl)

    @abstractmethod
    async def issue(self) -> Nonce:
        """Create and persist a fresh nonce."""

    @abstractmethod
    async def consume(self, value: str) -> ConsumeResult:
        """Atomically mark ``value`` as used. At most one caller ever gets OK."""

    @abstractmethod
    async def sweep(self) -> int:
        """Evict entries past expiry plus retention. Returns the number evicted."""


class RedisNonceStore(NonceStore):
    KEY_PREFIX = "auth:nonce:"

    def __init__(self, redis, **kwargs):
        super().__init__(**kwargs)
        self.redis = redis

    def _key(self, value: str) -> str:
        return f"{self.KEY_PREFIX}{value}"

    async def issue(self) -> Nonce:
        nonce = self._new_nonce()
        keep_ms = int((self.ttl + self.retention).total_seconds() * 1000)
        try:
            await self.redis.set(self._key(nonce.value), _to_ms(nonce.expires_at), px=keep_ms)
        except RedisError as e:
            raise NonceStoreError(f"Failed to store nonce: {e}") from e
        return nonce

    async def consume(self, value: str) -> ConsumeResult:
        key = self._key(value)
        now_ms = _to_ms(self.clock())
        try:
            raw = await self.redis.get(key)
            if raw is None:
                return ConsumeResult.UNKNOWN
            expires_ms = int(raw)
            if now_ms >= expires_ms:
                return ConsumeResult.EXPIRED
            # The claim key is the single point of serialization between callers.
            keep_ms = expires_ms - now_ms + int(self.retention.total_seconds() * 1000)
            claimed = await self.redis.set(f"{key}:consumed", now_ms, nx=True, px=keep_ms)
        except RedisError as e:
            raise NonceStoreError(f"Failed to consume nonce: {e}") from e
        return ConsumeResult.OK if claimed else ConsumeResult.ALREADY_USED

    async def sweep(self) -> int:
        # Redis evicts keys on their own TTL.
        return 0


class SqlNonceStore(NonceStore):
    def __init__(self, session_factory, **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory

    async def issue(self) -> Nonce:
        nonce = self._new_nonce()
        try:
            async with self.session_factory() as db:
                db.add(AuthNonce(value=nonce.value, issued_at=nonce.issued_at, expires_at=nonce.expires_at))
                await db.commit()
        except SQLAlchemyError as e:
            raise NonceStoreError(f"Failed to store nonce: {e}") from e
        return nonce

    async def consume(self, value: str) -> ConsumeResult:
        now = self.clock()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(AuthNonce)
                    .where(
                        AuthNonce.value == value,
                        AuthNonce.consumed_at.is_(None),
                        AuthNonce.expires_at > now,
                    )
                    .values(consumed_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if result.rowcount == 1:
                    return ConsumeResult.OK
                row = await db.get(AuthNonce, value)
        except SQLAlchemyError as e:
            raise NonceStoreError(f"Failed to consume nonce: {e}") from e

        if row is None:
            return ConsumeResult.UNKNOWN
        if _as_utc(row.expires_at) <= _as_utc(now):
            return ConsumeResult.EXPIRED
        return ConsumeResult.ALREADY_USED

    async def sweep(self) -> int:
        cutoff = self.clock() - self.retention
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    delete(AuthNonce)
                    .where(AuthNonce.expires_at <= cutoff)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise NonceStoreError(f"Failed to sweep nonces: {e}") from e
        return result.rowcount or 0


_store: Optional[NonceStore] = None


async def get_nonce_store() -> NonceStore:
    """Build the configured store once per process."""
    global _store
    if _store is None:
        if settings.NONCE_BACKEND == "database":
            from app.database import AsyncSessionLocal
            _store = SqlNonceStore(AsyncSessionLocal)
        else:
            from app.core.redis import get_redis
            _store = RedisNonceStore(await get_redis())
    return _store


async def sweep_expired_nonces():
    """Scheduled every NONCE_SWEEP_INTERVAL_SECONDS from the app lifespan."""
    store = await get_nonce_store()
    try:
        evicted = await store.sweep()
    except NonceStoreError as e:
        logger.warning("Nonce sweep failed: %s", e)
        return
    if evicted:
        logger.info("Evicted %d expired nonces", evicted)
