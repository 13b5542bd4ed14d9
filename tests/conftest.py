from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from expense_api.config import Settings
from expense_api.database import UserModel, build_engine, build_sessionmaker, create_tables
from expense_api.security import TokenService
from expense_api.store import ExpenseStore, UserStore


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key="test-secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        access_token_expire_minutes=60,
        bcrypt_rounds=4,
        log_level="DEBUG",
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def tokens(settings, clock):
    return TokenService.from_settings(settings, clock=clock)


@pytest_asyncio.fixture
async def session(settings):
    engine = build_engine(settings)
    await create_tables(engine)
    async with build_sessionmaker(engine)() as session:
        yield session
    await engine.dispose()


@pytest_asyncio.fixture
async def users(session):
    """Two account ids, ``alice`` and ``bob``."""
    store = UserStore(session)
    alice = await store.add(UserModel(name="Alice", email="alice@example.com", password_hash="x"))
    bob = await store.add(UserModel(name="Bob", email="bob@example.com", password_hash="x"))
    return {"alice": alice.id, "bob": bob.id}


@pytest.fixture
def expense_store(session):
    return ExpenseStore(session)
