"""Custom exceptions for the deduplication engine."""


class DeduplicationError(Exception):
    """Base class for errors raised by patient_dedup."""
    pass


class ConfigurationError(DeduplicationError):
    """Raised when the matching configuration is invalid (weights, thresholds, blocking)."""
    pass


class InvalidTransitionError(DeduplicationError):
    """Raised when a match candidate is moved to a status its current status does not allow."""
    pass


class CandidateNotFoundError(DeduplicationError):
    """Raised when no match candidate exists for the requested pair or id."""
    pass


class LedgerWriteError(DeduplicationError):
    """Raised when a bucket of candidates could not be committed; nothing from the bucket was written."""
    pass
