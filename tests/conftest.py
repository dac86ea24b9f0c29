"""Shared pytest fixtures for ContactSense tests."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Collection
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from contact_sense.config import settings
from contact_sense.errors import IntegrityViolation
from contact_sense.models import Base, Contact, LinkPrecedence
from contact_sense.resolution import TransactionCoordinator

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _copy(contact: Contact) -> Contact:
    return Contact(
        id=contact.id,
        email=contact.email,
        phone_number=contact.phone_number,
        linked_id=contact.linked_id,
        link_precedence=contact.link_precedence,
        created_at=contact.created_at,
        updated_at=contact.updated_at,
    )


class InMemoryContactStore:
    """ContactStore over one transaction's private copy of the data."""

    def __init__(self, db: InMemoryDatabase, rows: dict[int, Contact]) -> None:
        self._db = db
        self._rows = rows

    def _matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        matches = [
            c
            for c in self._rows.values()
            if (email and c.email == email) or (phone_number and c.phone_number == phone_number)
        ]
        return sorted(matches, key=lambda c: (c.created_at, c.id))

    async def lock_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        await asyncio.sleep(0)
        self._db.lock_calls += 1
        if self._db.fail_on_lock:
            raise self._db.fail_on_lock.pop(0)
        if self._db.hide_from_lock:
            return []
        return self._matching(email, phone_number)

    async def find_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        await asyncio.sleep(0)
        return self._matching(email, phone_number)

    async def find_by_id(self, contact_id: int) -> Contact | None:
        await asyncio.sleep(0)
        self._db.lookups.append(contact_id)
        return self._rows.get(contact_id)

    async def find_cluster_members(self, root_ids: Collection[int]) -> list[Contact]:
        await asyncio.sleep(0)
        members = [c for c in self._rows.values() if c.id in root_ids or c.linked_id in root_ids]
        return sorted(members, key=lambda c: (c.created_at, c.id))

    async def create(
        self,
        *,
        email: str | None,
        phone_number: str | None,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> Contact:
        await asyncio.sleep(0)
        contact = self._db.new_contact(
            email=email,
            phone_number=phone_number,
            linked_id=linked_id,
            link_precedence=precedence,
        )
        self._rows[contact.id] = contact
        return contact

    async def update(
        self,
        contact_id: int,
        *,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> None:
        await asyncio.sleep(0)
        if self._db.fail_on_update is not None:
            raise self._db.fail_on_update
        contact = self._rows.get(contact_id)
        if contact is None:
            msg = f"Contact {contact_id} vanished during resolution"
            raise IntegrityViolation(msg)
        contact.linked_id = linked_id
        contact.link_precedence = precedence
        self._db.updates.append(contact_id)


class InMemoryDatabase:
    """Serializable in-memory contact table.

    Calling the instance opens a transaction: it holds a global lock, works on
    copies and publishes them only when the block exits cleanly.
    """

    def __init__(self) -> None:
        self.contacts: dict[int, Contact] = {}
        self._next_id = 1
        self._clock = EPOCH
        self._lock = asyncio.Lock()

        self.transactions = 0
        self.lock_calls = 0
        self.lookups: list[int] = []
        self.updates: list[int] = []
        self.fail_on_lock: list[BaseException] = []
        self.fail_on_update: BaseException | None = None
        self.fail_on_commit: list[BaseException] = []
        self.hide_from_lock = False

    def new_contact(
        self,
        *,
        email: str | None = None,
        phone_number: str | None = None,
        linked_id: int | None = None,
        link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        created_at: datetime | None = None,
    ) -> Contact:
        self._clock += timedelta(seconds=1)
        contact = Contact(
            id=self._next_id,
            email=email,
            phone_number=phone_number,
            linked_id=linked_id,
            link_precedence=link_precedence,
            created_at=created_at or self._clock,
            updated_at=created_at or self._clock,
        )
        self._next_id += 1
        return contact

    def add(self, **kwargs) -> Contact:
        """Insert committed data directly, bypassing resolution."""
        contact = self.new_contact(**kwargs)
        self.contacts[contact.id] = contact
        return contact

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[InMemoryContactStore]:
        async with self._lock:
            self.transactions += 1
            rows = {cid: _copy(c) for cid, c in self.contacts.items()}
            yield InMemoryContactStore(self, rows)
            if self.fail_on_commit:
                raise self.fail_on_commit.pop(0)
            self.contacts = rows

    def primaries(self) -> list[Contact]:
        return [c for c in self.contacts.values() if c.link_precedence == LinkPrecedence.PRIMARY]


@pytest.fixture
def memory_db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def coordinator(memory_db: InMemoryDatabase) -> TransactionCoordinator:
    return TransactionCoordinator(memory_db, max_retries=2, retry_backoff_seconds=0)


# Type alias for factory fixture
MakeCoordinator = Callable[..., TransactionCoordinator]


@pytest.fixture
def make_coordinator(memory_db: InMemoryDatabase) -> MakeCoordinator:
    """Factory fixture for coordinators with custom retry settings."""

    def _make(**kwargs) -> TransactionCoordinator:
        kwargs.setdefault("retry_backoff_seconds", 0)
        return TransactionCoordinator(memory_db, **kwargs)

    return _make


@pytest.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite database file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contacts.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sqlite_session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)


# Use a separate test database to avoid polluting development data
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL",
    settings.database_url.replace("/contact_sense", "/contact_sense_test"),
)


@pytest.fixture
async def pg_engine() -> AsyncGenerator[AsyncEngine, None]:
    """PostgreSQL test database with freshly created tables.

    Tables are dropped at the end. Tests using this fixture are skipped when
    the test database cannot be reached.
    """
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, connect_args={"timeout": 5})
    if engine.dialect.name != "postgresql":
        await engine.dispose()
        pytest.skip(f"TEST_DATABASE_URL is not PostgreSQL: {engine.url!r}")

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except (DBAPIError, OSError) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL test database unavailable: {e}")

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def pg_session_factory(pg_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(pg_engine, class_=AsyncSession, expire_on_commit=False)
