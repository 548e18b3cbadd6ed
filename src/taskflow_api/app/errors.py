"""Domain error taxonomy shared by services, stores, and the HTTP layer.

Beginner terms:
- Domain error: a failure that belongs to the business rules (not a crash).
- status_code: the HTTP status the API layer maps each error class to.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for caller-visible business failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(DomainError):
    """Referenced task, workflow, project, workspace, or user is absent."""

    status_code = 404


class Forbidden(DomainError):
    """Role or ownership rule violated by the acting user."""

    status_code = 403


class ValidationError(DomainError):
    """Required input missing or malformed."""

    status_code = 400


class InvalidTransition(ValidationError):
    """Requested task status move is not part of the transition table."""


class Conflict(DomainError):
    """Stored state changed underneath the request, or duplicate membership."""

    status_code = 409


class Unavailable(DomainError):
    """A collaborator (database, LLM backend) faulted or is not configured."""

    status_code = 503
