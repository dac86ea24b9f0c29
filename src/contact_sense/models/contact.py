"""Contact model: the sole persisted entity."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.expression import FunctionElement

from contact_sense.models.base import Base
from contact_sense.models.enums import LinkPrecedence


class insert_timestamp(FunctionElement):
    """Wall-clock time at which the row is inserted.

    PostgreSQL's now() is fixed at transaction start; a transaction that waited
    on a lock must still stamp its rows later than rows committed meanwhile.
    """

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(insert_timestamp)
def _insert_timestamp_default(element, compiler, **kw):
    return "CURRENT_TIMESTAMP"


@compiles(insert_timestamp, "postgresql")
def _insert_timestamp_postgresql(element, compiler, **kw):
    return "clock_timestamp()"


class Contact(Base):
    """One observed (email, phone number) pairing.

    Contacts sharing an email or phone number form a cluster with exactly one
    PRIMARY member (the oldest) and zero or more SECONDARY members whose
    linked_id points directly at the primary. Clusters only ever merge.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        CheckConstraint(
            "(link_precedence = 'primary' AND linked_id IS NULL)"
            " OR (link_precedence = 'secondary' AND linked_id IS NOT NULL)",
            name="ck_contacts_precedence_link",
        ),
        CheckConstraint(
            "email IS NOT NULL OR phone_number IS NOT NULL",
            name="ck_contacts_has_identifier",
        ),
        Index("ix_contacts_created_at_id", "created_at", "id"),
    )
    # Fetch server-side timestamps on INSERT; election reads created_at.
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), index=True)

    linked_id: Mapped[int | None] = mapped_column(ForeignKey("contacts.id"), index=True)
    """Cluster primary's id. NULL iff this contact is the primary."""

    link_precedence: Mapped[LinkPrecedence] = mapped_column(
        Enum(
            LinkPrecedence,
            name="link_precedence",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        default=LinkPrecedence.PRIMARY,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=insert_timestamp()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=insert_timestamp()
    )

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    def __repr__(self) -> str:
        return (
            f"Contact(id={self.id!r}, email={self.email!r}, phone_number={self.phone_number!r}, "
            f"linked_id={self.linked_id!r}, link_precedence={self.link_precedence!r})"
        )
