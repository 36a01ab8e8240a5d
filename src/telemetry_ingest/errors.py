"""
Exceptions for the ingestion service's event store.
"""


class StoreError(Exception):
    """Base error for event store operations."""

    pass


class StoreUnavailable(StoreError):
    """Database unreachable or temporarily failing. Clients should retry."""

    pass


class StoreIntegrityError(StoreError):
    """Constraint violation other than a duplicate event id."""

    pass


def map_db_error(e: Exception) -> StoreError:
    from sqlalchemy import exc as sa_exc

    if isinstance(e, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return StoreUnavailable(str(e))
    if isinstance(e, sa_exc.IntegrityError):
        return StoreIntegrityError(str(e))
    return StoreError(str(e))
