"""Cluster resolution algorithm.

Given an email and/or phone number, decide which identity cluster the request
belongs to and emit the mutations that keep every cluster well-formed:

1. Lock and fetch contacts directly matching either identifier
2. No match: re-check under lock, else create a fresh PRIMARY
3. Walk each match up its linked_id chain to the cluster root
4. Load every contact of every touched cluster
5. Elect the oldest contact (created_at, then id) as primary
6. Re-link everything else to it (this is where clusters merge)
7. If the request carries an email or phone the cluster has never seen,
   record it as one new SECONDARY contact

All store calls run inside the caller's transaction; see coordinator.py.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from contact_sense.config import settings
from contact_sense.errors import InputError, IntegrityViolation
from contact_sense.models.contact import Contact
from contact_sense.models.enums import LinkPrecedence
from contact_sense.resolution.store import ContactStore

logger = logging.getLogger(__name__)


@dataclass
class ClusterResolution:
    """Outcome of resolving one request."""

    primary_id: int
    """Id of the elected cluster primary."""

    contacts: list[Contact]
    """Final cluster in load order, with any newly created contact last."""

    created: Contact | None = None
    """Contact inserted by this request, if any."""

    relinked_ids: list[int] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    """Contacts whose linked_id/link_precedence changed."""

    @property
    def primary(self) -> Contact:
        return next(c for c in self.contacts if c.id == self.primary_id)


def cluster_order_key(contact: Contact) -> tuple[datetime, int]:
    """Creation order: created_at, ties broken by id."""
    return (contact.created_at, contact.id)


def elect_primary(contacts: Iterable[Contact]) -> Contact:
    """Return the oldest contact. Raises ValueError when ``contacts`` is empty."""
    return min(contacts, key=cluster_order_key)


async def find_cluster_root(
    store: ContactStore,
    contact: Contact,
    *,
    max_hops: int,
) -> Contact:
    """Follow linked_id from ``contact`` until reaching the cluster root.

    The root is the first contact flagged PRIMARY, or the first one without a
    linked_id. Healthy data needs at most one hop.

    Raises:
        IntegrityViolation: On a dangling link, a cycle, or a chain longer
            than ``max_hops``.
    """
    current = contact
    visited = {contact.id}
    hops = 0

    while not current.is_primary and current.linked_id is not None:
        if hops >= max_hops:
            msg = f"Link chain from contact {contact.id} exceeds {max_hops} hops"
            raise IntegrityViolation(msg)

        parent = await store.find_by_id(current.linked_id)
        if parent is None:
            msg = f"Contact {current.id} links to missing contact {current.linked_id}"
            raise IntegrityViolation(msg)
        if parent.id in visited:
            msg = f"Link cycle detected at contact {parent.id}"
            raise IntegrityViolation(msg)

        visited.add(parent.id)
        current = parent
        hops += 1

    if not current.is_primary:
        logger.warning(
            "Contact %d is flagged secondary but has no linked_id; treating it as root",
            current.id,
        )
    elif hops > 1:
        logger.warning("Contact %d reached root %d after %d hops", contact.id, current.id, hops)

    return current


class ClusterResolver:
    """Resolves a request against the contacts visible through a store.

    Usage:
        async with unit_of_work() as store:
            resolution = await ClusterResolver(store).resolve(
                email="a@x.com", phone_number="123"
            )
    """

    def __init__(self, store: ContactStore, *, max_link_hops: int | None = None) -> None:
        self._store = store
        self._max_link_hops = (
            settings.resolution_max_link_hops if max_link_hops is None else max_link_hops
        )

    async def resolve(
        self,
        email: str | None = None,
        phone_number: str | None = None,
    ) -> ClusterResolution:
        """Resolve a request to its cluster, applying merges and extensions.

        Args:
            email: Requested email; empty string counts as omitted.
            phone_number: Requested phone number; empty string counts as omitted.

        Returns:
            ClusterResolution with the elected primary and the final cluster.
        """
        email = email or None
        phone_number = phone_number or None
        if email is None and phone_number is None:
            raise InputError("Either email or phoneNumber must be provided")

        candidates = await self._store.lock_matching(email, phone_number)

        if not candidates:
            # A concurrent request may have inserted between an earlier
            # unlocked read and our lock; look again before creating.
            candidates = await self._store.find_matching(email, phone_number)
            if not candidates:
                return await self._create_primary(email, phone_number)
            logger.debug("Re-check found %d contact(s) after empty locked match", len(candidates))

        root_ids = await self._find_root_ids(candidates)
        members = await self._load_clusters(root_ids)

        primary = elect_primary(members)
        relinked = await self._link_to_primary(primary, members)
        created = await self._extend(primary, members, email, phone_number)

        contacts = [*members, created] if created is not None else members
        return ClusterResolution(
            primary_id=primary.id,
            contacts=contacts,
            created=created,
            relinked_ids=relinked,
        )

    async def _create_primary(self, email: str | None, phone_number: str | None) -> ClusterResolution:
        contact = await self._store.create(
            email=email,
            phone_number=phone_number,
            linked_id=None,
            precedence=LinkPrecedence.PRIMARY,
        )
        logger.info("Created primary contact %d", contact.id)
        return ClusterResolution(primary_id=contact.id, contacts=[contact], created=contact)

    async def _find_root_ids(self, candidates: Iterable[Contact]) -> set[int]:
        root_ids: set[int] = set()
        for candidate in candidates:
            root = await find_cluster_root(self._store, candidate, max_hops=self._max_link_hops)
            root_ids.add(root.id)
        return root_ids

    async def _load_clusters(self, root_ids: Collection[int]) -> list[Contact]:
        members = await self._store.find_cluster_members(root_ids)
        if not members:
            msg = f"Cluster roots {sorted(root_ids)} disappeared during resolution"
            raise IntegrityViolation(msg)

        if len(root_ids) > 1:
            logger.info("Merging %d clusters rooted at %s", len(root_ids), sorted(root_ids))
        return sorted(members, key=cluster_order_key)

    async def _link_to_primary(self, primary: Contact, members: list[Contact]) -> list[int]:
        relinked: list[int] = []

        if not primary.is_primary or primary.linked_id is not None:
            # Only reachable with legacy data where a secondary predates its primary
            logger.warning("Promoting contact %d, older than its recorded primary", primary.id)
            await self._set_link(primary, None, LinkPrecedence.PRIMARY)
            relinked.append(primary.id)

        for contact in members:
            if contact.id == primary.id:
                continue
            if contact.is_primary or contact.linked_id != primary.id:
                if contact.is_primary:
                    logger.info("Demoting primary contact %d under %d", contact.id, primary.id)
                await self._set_link(contact, primary.id, LinkPrecedence.SECONDARY)
                relinked.append(contact.id)

        return relinked

    async def _set_link(
        self,
        contact: Contact,
        linked_id: int | None,
        precedence: LinkPrecedence,
    ) -> None:
        await self._store.update(contact.id, linked_id=linked_id, precedence=precedence)
        contact.linked_id = linked_id
        contact.link_precedence = precedence

    async def _extend(
        self,
        primary: Contact,
        members: list[Contact],
        email: str | None,
        phone_number: str | None,
    ) -> Contact | None:
        known_emails = {c.email for c in members if c.email}
        known_phones = {c.phone_number for c in members if c.phone_number}

        new_email = email is not None and email not in known_emails
        new_phone = phone_number is not None and phone_number not in known_phones
        if not (new_email or new_phone):
            return None

        contact = await self._store.create(
            email=email,
            phone_number=phone_number,
            linked_id=primary.id,
            precedence=LinkPrecedence.SECONDARY,
        )
        logger.info("Created secondary contact %d under primary %d", contact.id, primary.id)
        return contact
