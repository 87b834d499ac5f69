"""
Error taxonomy for the order-taking engine.

Business conditions such as insufficient stock are returned as data and never
raised. The classes below cover malformed input, missing records and
infrastructure faults.
"""


class CommerceError(Exception):
    """
    Base class for errors raised by the engine.

    Attributes:
        code: Machine readable error code (e.g. "PRODUCT_NOT_FOUND")
        message: Human readable description
        extra: Additional context (tool name, ids, ...)
    """

    def __init__(self, code: str, message: str, **extra):
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class ValidationError(CommerceError):
    """Malformed tool arguments or an invalid store operation."""


class NotFoundError(CommerceError):
    """A referenced product, order or conversation does not exist."""


class ExternalServiceError(CommerceError):
    """The language model or the messaging transport failed or timed out."""


class PersistenceError(CommerceError):
    """The storage layer failed; the operation was rolled back."""
