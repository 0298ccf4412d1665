"""Errors raised by the matching core."""


class PoolingError(Exception):
    """Base class for matching and pool lifecycle errors."""
    pass


class NotFound(PoolingError):
    """Raised when a request, pool or driver id does not exist."""

    def __init__(self, kind: str, ident):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class InvalidState(PoolingError):
    """Raised when an entity is not in a state that allows the operation."""
    pass


class ConcurrencyConflict(PoolingError):
    """Raised when a concurrent write won the race; the whole unit of work is safe to retry."""
    pass


class RepositoryUnavailable(PoolingError):
    """Raised on transient storage failures (locked or unreachable database)."""
    pass
