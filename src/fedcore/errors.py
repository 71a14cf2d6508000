"""Error taxonomy for the federation core."""


class FederationError(Exception):
    """Base class for federation errors."""
    pass


class ResolutionError(FederationError):
    """Remote actor or object could not be fetched or is malformed."""
    pass


class ValidationError(FederationError):
    """Activity references something unknown or is inconsistent."""
    pass


class StorageError(FederationError):
    """Write failed for a reason other than an idempotent duplicate."""
    pass


class DeliveryError(FederationError):
    """Push delivery request failed."""
    pass


class NotFoundError(FederationError):
    """Requested local subject or cursor does not exist."""
    pass
