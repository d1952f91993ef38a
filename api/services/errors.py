"""Domain errors shared by the CRM identity and sync services."""
from api.services.identifiers import InvalidIdentifierError


class NotFoundError(LookupError):
    """A referenced identity, contact, record or sync state does not exist."""


class SyncInProgressError(RuntimeError):
    """A sync was requested for a state that is already syncing."""


class UnknownSourceError(LookupError):
    """No provider is registered for the requested source."""


__all__ = [
    "InvalidIdentifierError",
    "NotFoundError",
    "SyncInProgressError",
    "UnknownSourceError",
]
