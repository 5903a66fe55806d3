import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from app.database import Base
import app.models  # noqa: F401 - register all models
from app.services.nonce_store import RedisNonceStore, SqlNonceStore
from app.services.siwe_message import ChallengeMessage, build_message

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
CHAIN_ID = 8453
DOMAIN = "app.example.com"


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio calls RedisNonceStore makes."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.data.get(key)

    async def set(self, key, value, nx=False, px=None):
        await asyncio.sleep(0)
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        return True


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc))

@pytest.fixture
def fake_redis():
    return FakeRedis()

@pytest.fixture
def redis_store(fake_redis, clock):
    return RedisNonceStore(fake_redis, ttl_seconds=300, retention_seconds=300, clock=clock)

@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()

@pytest.fixture
def sql_store(session_factory, clock):
    return SqlNonceStore(session_factory, ttl_seconds=300, retention_seconds=300, clock=clock)

@pytest_asyncio.fixture
async def file_sql_store(tmp_path, clock):
    """SqlNonceStore on a file database, so concurrent sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'nonces.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlNonceStore(async_sessionmaker(engine, expire_on_commit=False), ttl_seconds=300, retention_seconds=300, clock=clock)
    await engine.dispose()

@pytest.fixture
def account():
    return Account.create()

@pytest.fixture
def rpc():
    """Chain RPC double; by default the address has no contract code."""
    client = AsyncMock()
    client.get_code = AsyncMock(return_value=b"")
    return client


def make_message(address: str, nonce: str, issued_at: datetime, **kwargs) -> str:
    return build_message(ChallengeMessage(
        domain=kwargs.pop("domain", DOMAIN),
        address=address,
        chain_id=kwargs.pop("chain_id", CHAIN_ID),
        nonce=nonce,
        issued_at=issued_at,
        statement=kwargs.pop("statement", "Sign in to Example."),
        **kwargs,
    ))

def sign(acct, message: str) -> str:
    return acct.sign_message(encode_defunct(text=message)).signature.hex()
