"""Database models for ContactSense."""

from contact_sense.models.base import Base
from contact_sense.models.contact import Contact
from contact_sense.models.enums import LinkPrecedence

__all__ = [
    "Base",
    "Contact",
    "LinkPrecedence",
]
