"""
Error taxonomy for the audit service.

Fatal errors (StoreInitError, ListenerBindError) abort startup.
The others are logged by the component that catches them and processing
continues.
"""


class AuditServiceError(Exception):
    """Base class for all audit service errors."""


class StoreInitError(AuditServiceError):
    """The audit table could not be prepared."""


class StoreWriteError(AuditServiceError):
    """A single record could not be appended."""


class StoreReadError(AuditServiceError):
    """Recent records could not be read back."""


class SubscriptionError(AuditServiceError):
    """The upstream event source is unavailable."""


class ListenerBindError(AuditServiceError):
    """The HTTP listener could not be bound."""
