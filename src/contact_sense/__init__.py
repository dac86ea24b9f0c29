"""ContactSense: identity reconciliation for contacts sharing emails and phone numbers."""

__version__ = "0.1.0"
