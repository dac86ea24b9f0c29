"""Error taxonomy for identity reconciliation.

- InputError: request rejected before resolution runs (no identifier, bad email)
- ConcurrencyConflict: lock timeout, deadlock or serialization failure; retried
- IntegrityViolation: stored data breaks a cluster invariant; never auto-repaired
- StorageUnavailable: the database cannot be reached; not retried
"""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

# SQLSTATE codes that mean "another transaction got in the way, try again"
RETRYABLE_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available (lock_timeout)
    }
)


class ContactSenseError(Exception):
    """Base class for all ContactSense errors."""


class InputError(ContactSenseError):
    """Neither identifier was supplied, or the email is malformed."""


class ConcurrencyConflict(ContactSenseError):
    """The resolution lost a race against another transaction."""


class IntegrityViolation(ContactSenseError):
    """Stored contacts violate a cluster invariant."""


class StorageUnavailable(ContactSenseError):
    """The contact store could not be reached."""


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    # asyncpg / psycopg expose sqlstate, psycopg2 exposes pgcode
    return (
        getattr(orig, "sqlstate", None)
        or getattr(orig, "pgcode", None)
        or getattr(orig.__cause__, "sqlstate", None)
    )


def classify_db_error(exc: BaseException) -> ContactSenseError:
    """Map a driver-level failure onto the ContactSense taxonomy.

    Args:
        exc: Exception raised inside a resolution transaction.

    Returns:
        The ContactSenseError to raise in its place (caller chains ``from exc``).
    """
    if isinstance(exc, ContactSenseError):
        return exc

    if isinstance(exc, DBAPIError):
        sqlstate = _sqlstate(exc)
        if sqlstate in RETRYABLE_SQLSTATES:
            return ConcurrencyConflict(f"Transaction conflict (SQLSTATE {sqlstate})")
        if isinstance(exc, OperationalError) and "database is locked" in str(exc.orig):
            return ConcurrencyConflict("Database is locked")
        if isinstance(exc, IntegrityError):
            return IntegrityViolation(f"Constraint violated: {exc.orig}")
        if exc.connection_invalidated or isinstance(exc, (InterfaceError, OperationalError)):
            return StorageUnavailable(f"Contact store unavailable: {exc.orig}")

    if isinstance(exc, OSError):
        return StorageUnavailable(f"Contact store unavailable: {exc}")

    return ContactSenseError(f"Unexpected storage failure: {exc}")
