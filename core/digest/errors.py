"""
core/digest/errors.py — Error taxonomy of the digest subsystem.

    DigestNotFoundError      record absent
    DigestExistsError        create on an existing (or reserved) id
    DigestInUseError         another edit holds the record lock; always retryable
    DeliveryFailedError      sender / address resolution failure; logged, never rolls back
    DigestPersistenceError   storage I/O failure; surfaced to commit/create/edit callers
"""
from __future__ import annotations


class DigestError(Exception):
    """Base class for all digest errors."""

    def __init__(self, digest_id: str = "", message: str = "") -> None:
        self.digest_id = digest_id
        super().__init__(message or digest_id)


class DigestNotFoundError(DigestError):
    pass


class DigestExistsError(DigestError):
    pass


class DigestInUseError(DigestError):
    pass


class DeliveryFailedError(DigestError):
    pass


class DigestPersistenceError(DigestError):
    pass
