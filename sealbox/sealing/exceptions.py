"""
Sealbox Sealing Exceptions

Custom exceptions for sealing operations providing consistent error handling.
"""

from typing import Optional


class SealingError(Exception):
    """Base exception for sealing operations."""

    pass


class ConfigurationError(SealingError):
    """Missing or invalid secret source or configuration. Fatal, never retried."""

    def __init__(self, message: str, setting: Optional[str] = None):
        self.setting = setting
        super().__init__(message)


class ValidationError(SealingError):
    """Malformed input supplied by the caller."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DecryptionError(SealingError):
    """Base for tamper and wrong-key failures."""

    pass


class AuthenticationError(DecryptionError):
    """Authentication tag did not verify."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class UnwrapError(DecryptionError):
    """An envelope layer could not be removed."""

    def __init__(self, message: str = "Envelope unwrap failed", layer: Optional[str] = None):
        self.layer = layer
        super().__init__(message)


class ConditionNotSatisfied(SealingError):
    """The escrow authority has not released the message yet."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Release condition not satisfied: {reference}")


class NotFound(SealingError):
    """Base exception for missing content, records or conditions."""

    pass


class ContentNotFoundError(NotFound):
    """Requested content address does not exist."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Content not found: {address}")


class RecordNotFoundError(NotFound):
    """No index record matches the reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Index record not found: {reference}")


class ConditionNotFoundError(NotFound):
    """The escrow authority does not know the condition reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Escrow condition not found: {reference}")


class TransientError(SealingError):
    """Retryable I/O failure from a storage or escrow collaborator."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.operation = operation
        self.original_error = original_error
        super().__init__(message)


class IntegrityError(SealingError):
    """Content does not match its address or commitment."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.details = details
        super().__init__(message)


class StorageError(SealingError):
    """Error during local persistence."""

    def __init__(
        self,
        message: str,
        operation: str,
        original_error: Optional[Exception] = None,
    ):
        self.operation = operation
        self.original_error = original_error
        super().__init__(message)
