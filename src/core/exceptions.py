"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. Automatic escalation treats most
of them as operational (logged, skipped); manual staff actions surface them
to the caller.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


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


class InvalidTransitionException(DomainException):
    """Raised when a status change violates the ticket state machine."""

    def __init__(
        self,
        ticket_id: str,
        from_status: str,
        to_status: str,
        details: Optional[dict] = None
    ):
        self.ticket_id = ticket_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Ticket {ticket_id} cannot move from '{from_status}' to '{to_status}'",
            details or {"ticket_id": ticket_id, "from_status": from_status, "to_status": to_status}
        )


class RuleEvaluationException(DomainException):
    """Raised when a rule definition is malformed or cannot be evaluated."""

    def __init__(self, rule_id: str, message: str, details: Optional[dict] = None):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id}: {message}", details or {"rule_id": rule_id})


class VersionConflictException(RepositoryException):
    """Raised when a compare-and-swap ticket update loses to a concurrent writer."""

    def __init__(self, ticket_id: str, expected_version: int, details: Optional[dict] = None):
        self.ticket_id = ticket_id
        self.expected_version = expected_version
        super().__init__(
            f"Ticket {ticket_id} was modified concurrently (expected version {expected_version})",
            details or {"ticket_id": ticket_id, "expected_version": expected_version}
        )


class StorageUnavailableException(RepositoryException):
    """Raised when the backing store cannot be reached at all."""


class NotificationEnqueueException(ExternalServiceException):
    """Raised when a notification request cannot be handed to the dispatcher."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Dispatcher", message, details)

