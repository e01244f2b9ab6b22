"""Custom exception classes for the reflector."""

from typing import Optional


class ReflectorException(Exception):
    """
    Base exception class for all reflector errors.
    """
    pass


class ApiCallError(ReflectorException):
    """
    Base class for failures reported by the Kubernetes API.

    Carries the HTTP status (if any) and the full name of the object involved.
    """

    def __init__(self, message: str, status: Optional[int] = None, full_name: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.full_name = full_name


class NotFoundError(ApiCallError):
    """
    Raised when a requested object does not exist (HTTP 404).
    """
    pass


class ConflictError(ApiCallError):
    """
    Raised when a write collides with another writer (HTTP 409).
    """
    pass


class TransportError(ApiCallError):
    """
    Raised for network, authentication and server-side failures.
    """
    pass


class MalformedSecretError(ReflectorException):
    """
    Raised when a destination object cannot be constructed.
    """
    pass


class ConfigError(ReflectorException):
    """
    Raised when the replication config file is unreadable or invalid.
    """
    pass
