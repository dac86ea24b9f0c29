"""Contact store: the persistence boundary of identity resolution.

The resolver only talks to a ``ContactStore``. Every call participates in the
transaction opened by the unit of work that produced the store, so a
resolution either commits as a whole or leaves no trace.

Locking (PostgreSQL):
- Transaction-scoped advisory locks keyed on each requested identifier,
  taken in sorted order. These serialize requests on an identifier even when
  no row carries it yet (the "two brand-new requests" race).
- ``SELECT ... FOR UPDATE`` on directly matched rows and on cluster members.
- ``lock_timeout`` per transaction; a timed-out wait becomes a retryable
  ConcurrencyConflict.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Collection
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import ColumnElement, func, or_, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contact_sense.config import settings
from contact_sense.errors import IntegrityViolation, classify_db_error
from contact_sense.models.contact import Contact
from contact_sense.models.enums import LinkPrecedence

logger = logging.getLogger(__name__)


class ContactStore(Protocol):
    """Operations the cluster resolver needs from storage."""

    async def lock_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        """Lock and return contacts matching either identifier, oldest first.

        An omitted identifier matches nothing.
        """
        ...

    async def find_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        """Same predicate as ``lock_matching`` without taking row locks."""
        ...

    async def find_by_id(self, contact_id: int) -> Contact | None: ...

    async def find_cluster_members(self, root_ids: Collection[int]) -> list[Contact]:
        """Contacts whose id, or whose linked_id, is one of ``root_ids``, oldest first."""
        ...

    async def create(
        self,
        *,
        email: str | None,
        phone_number: str | None,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> Contact: ...

    async def update(
        self,
        contact_id: int,
        *,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> None: ...


UnitOfWork = Callable[[], AbstractAsyncContextManager[ContactStore]]
"""Zero-argument factory opening one transaction and yielding its store."""


def _match_clause(email: str | None, phone_number: str | None) -> ColumnElement[bool] | None:
    conditions: list[ColumnElement[bool]] = []
    if email:
        conditions.append(Contact.email == email)
    if phone_number:
        conditions.append(Contact.phone_number == phone_number)
    if not conditions:
        return None
    return or_(*conditions)


def identifier_lock_keys(email: str | None, phone_number: str | None) -> list[str]:
    """Advisory lock keys for a request, in acquisition order."""
    keys: list[str] = []
    if email:
        keys.append(f"email:{email}")
    if phone_number:
        keys.append(f"phone:{phone_number}")
    return sorted(keys)


class SqlAlchemyContactStore:
    """ContactStore backed by an AsyncSession inside an open transaction.

    Usage:
        async with async_session_factory() as session, session.begin():
            store = SqlAlchemyContactStore(session)
            contacts = await store.lock_matching("a@x.com", "123")
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def is_postgres(self) -> bool:
        return self._session.get_bind().dialect.name == "postgresql"

    async def lock_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        clause = _match_clause(email, phone_number)
        if clause is None:
            return []

        if self.is_postgres:
            for key in identifier_lock_keys(email, phone_number):
                await self._session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))

        stmt = (
            select(Contact)
            .where(clause)
            .order_by(Contact.created_at, Contact.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.scalars(stmt)
        return list(result.all())

    async def find_matching(self, email: str | None, phone_number: str | None) -> list[Contact]:
        clause = _match_clause(email, phone_number)
        if clause is None:
            return []

        stmt = select(Contact).where(clause).order_by(Contact.created_at, Contact.id)
        result = await self._session.scalars(stmt)
        return list(result.all())

    async def find_by_id(self, contact_id: int) -> Contact | None:
        return await self._session.get(Contact, contact_id)

    async def find_cluster_members(
        self,
        root_ids: Collection[int],
        *,
        for_update: bool = True,
    ) -> list[Contact]:
        if not root_ids:
            return []

        ids = sorted(root_ids)
        stmt = (
            select(Contact)
            .where(or_(Contact.id.in_(ids), Contact.linked_id.in_(ids)))
            .order_by(Contact.created_at, Contact.id)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.scalars(stmt)
        return list(result.all())

    async def create(
        self,
        *,
        email: str | None,
        phone_number: str | None,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> Contact:
        contact = Contact(
            email=email,
            phone_number=phone_number,
            linked_id=linked_id,
            link_precedence=precedence,
        )
        self._session.add(contact)
        await self._session.flush()
        return contact

    async def update(
        self,
        contact_id: int,
        *,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> None:
        contact = await self._session.get(Contact, contact_id)
        if contact is None:
            msg = f"Contact {contact_id} vanished during resolution"
            raise IntegrityViolation(msg)

        contact.linked_id = linked_id
        contact.link_precedence = precedence
        contact.updated_at = datetime.now(timezone.utc)
        await self._session.flush()


class SqlAlchemyUnitOfWork:
    """Opens one transaction per call and yields a SqlAlchemyContactStore.

    Driver errors raised anywhere inside the block (including COMMIT) are
    translated into the ContactSense error taxonomy after rollback.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lock_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_timeout_ms = (
            settings.lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms
        )

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[SqlAlchemyContactStore]:
        try:
            async with self._session_factory() as session, session.begin():
                store = SqlAlchemyContactStore(session)
                if store.is_postgres and self._lock_timeout_ms > 0:
                    # SET does not take bind parameters
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = {int(self._lock_timeout_ms)}")
                    )
                yield store
        except (DBAPIError, OSError) as exc:
            error = classify_db_error(exc)
            logger.debug("Resolution transaction rolled back: %s", error)
            raise error from exc
