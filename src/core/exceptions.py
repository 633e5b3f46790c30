"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Only input validation escapes the answer pipeline; upstream failures are
raised by adapters and absorbed by the stage that called them. Stale
suggestions and exhausted polling are reported as outcomes, not exceptions.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors (e.g. an empty question)."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for chat completion / embedding API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


class LLMTimeoutException(LLMException):
    """The chat completion call did not finish before its deadline."""

    def __init__(self, timeout_ms: int, details: Optional[dict] = None):
        self.timeout_ms = timeout_ms
        super().__init__(f"timed out after {timeout_ms}ms", details)


class VectorStoreException(ExternalServiceException):
    """Exception for similarity search failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Vector Store", message, details)
