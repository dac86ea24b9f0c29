"""Pydantic schemas for the identify endpoint.

Wire names are camelCase (``phoneNumber``, ``primaryContactId``); Python
attributes are snake_case.
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Syntactic check only: one "@", no whitespace, a dot in the domain
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _coerce_phone(v: Any) -> str | None:
    """Phone numbers arrive as JSON strings or numbers; store them as strings."""
    if v is None or isinstance(v, bool):
        return v
    if isinstance(v, int | float):
        return str(int(v)) if float(v).is_integer() else str(v)
    if isinstance(v, str):
        return v.strip() or None
    return v


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IdentifyRequest(_CamelModel):
    """Body of ``POST /api/identify``. At least one field must be present."""

    email: str | None = Field(default=None, description="Contact email address")
    phone_number: Annotated[str | None, BeforeValidator(_coerce_phone)] = Field(
        default=None, description="Contact phone number (string or number)"
    )

    @field_validator("email")
    @classmethod
    def _validate_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email")
        return v

    @model_validator(mode="after")
    def _require_identifier(self) -> IdentifyRequest:
        if not self.email and not self.phone_number:
            raise ValueError("Either email or phoneNumber must be provided")
        return self


class ContactSummary(_CamelModel):
    """Externally visible view of one identity cluster."""

    primary_contact_id: int
    emails: list[str]
    phone_numbers: list[str]
    secondary_contact_ids: list[int]


class IdentifyResponse(BaseModel):
    contact: ContactSummary
