"""Enumerations for ContactSense data model."""

from enum import Enum


class LinkPrecedence(str, Enum):
    """Role of a contact within its identity cluster."""

    PRIMARY = "primary"  # Canonical contact, oldest in the cluster
    SECONDARY = "secondary"  # Linked to the cluster primary
