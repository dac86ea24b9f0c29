"""Reduce a resolved cluster to the identify response shape."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from contact_sense.models.contact import Contact
from contact_sense.schemas import ContactSummary, IdentifyResponse


def ordered_unique(values: Iterable[str | None]) -> list[str]:
    """Drop empty values and repeats, keeping first-seen order."""
    return list(dict.fromkeys(v for v in values if v))


def format_response(primary_id: int, contacts: Sequence[Contact]) -> IdentifyResponse:
    """Build the response for a cluster.

    Emails and phone numbers start with the primary's own values, then follow
    ``contacts`` order. Secondary ids keep ``contacts`` order.
    """
    primary = [c for c in contacts if c.id == primary_id]
    others = [c for c in contacts if c.id != primary_id]
    ordered = [*primary, *others]

    return IdentifyResponse(
        contact=ContactSummary(
            primary_contact_id=primary_id,
            emails=ordered_unique(c.email for c in ordered),
            phone_numbers=ordered_unique(c.phone_number for c in ordered),
            secondary_contact_ids=[c.id for c in others],
        )
    )
