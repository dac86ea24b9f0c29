"""Transaction coordinator: one resolution, one atomic unit of work.

The unit of work supplies the transaction and the row/identifier locks; the
coordinator runs the resolver inside it and restarts the whole resolution when
the store reports a ConcurrencyConflict. Any other failure propagates with the
transaction rolled back, so callers never observe a half-merged cluster.
"""

from __future__ import annotations

import asyncio
import logging

from contact_sense.config import settings
from contact_sense.errors import ConcurrencyConflict
from contact_sense.resolution.formatter import format_response
from contact_sense.resolution.resolver import ClusterResolution, ClusterResolver
from contact_sense.resolution.store import UnitOfWork
from contact_sense.schemas import IdentifyResponse

logger = logging.getLogger(__name__)


class TransactionCoordinator:
    """Runs cluster resolutions with bounded retry on lock conflicts.

    Usage:
        coordinator = TransactionCoordinator(SqlAlchemyUnitOfWork(async_session_factory))
        response = await coordinator.identify(email="a@x.com", phone_number="123")
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        *,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        max_link_hops: int | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            unit_of_work: Factory yielding a ContactStore bound to a fresh transaction.
            max_retries: Extra attempts after a ConcurrencyConflict (default from config).
            retry_backoff_seconds: Linear backoff step between attempts (default from config).
            max_link_hops: Bound on linked_id chain walks (default from config).
        """
        self._unit_of_work = unit_of_work
        self._max_retries = (
            settings.resolution_max_retries if max_retries is None else max_retries
        )
        self._retry_backoff_seconds = (
            settings.resolution_retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )
        self._max_link_hops = max_link_hops

    async def resolve(
        self,
        email: str | None = None,
        phone_number: str | None = None,
    ) -> ClusterResolution:
        """Resolve and commit; retry from scratch on ConcurrencyConflict.

        Raises:
            ConcurrencyConflict: When every attempt lost its race.
            IntegrityViolation: When stored links are malformed.
            StorageUnavailable: When the store cannot be reached.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._unit_of_work() as store:
                    resolver = ClusterResolver(store, max_link_hops=self._max_link_hops)
                    resolution = await resolver.resolve(email, phone_number)
            except ConcurrencyConflict as exc:
                if attempt > self._max_retries:
                    logger.warning("Giving up after %d conflicting attempt(s): %s", attempt, exc)
                    raise
                logger.warning(
                    "Resolution conflict on attempt %d/%d, retrying: %s",
                    attempt,
                    self._max_retries + 1,
                    exc,
                )
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            logger.debug(
                "Resolved to primary %d (%d contacts, created=%s, relinked=%s)",
                resolution.primary_id,
                len(resolution.contacts),
                resolution.created.id if resolution.created is not None else None,
                resolution.relinked_ids,
            )
            return resolution

    async def identify(
        self,
        email: str | None = None,
        phone_number: str | None = None,
    ) -> IdentifyResponse:
        """Resolve a request and format the committed cluster."""
        resolution = await self.resolve(email, phone_number)
        return format_response(resolution.primary_id, resolution.contacts)
