"""
Error taxonomy for the triage service.

Raised in the service layer, mapped to HTTP status codes in `mailla.main`.
"""
from __future__ import annotations

from typing import Optional


class ApplicationError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(ApplicationError):
    """A requested resource does not exist."""

    def __init__(self, resource_type: str, resource_id: Optional[str] = None, details: Optional[dict] = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = resource_type
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConversationNotFoundError(ResourceNotFoundError):
    def __init__(self, conversation_id: str):
        super().__init__("Triage conversation", conversation_id)


class TriageStartError(ApplicationError):
    def __init__(self, details: Optional[dict] = None):
        super().__init__("Failed to start triage conversation", details)


class TriageContinueError(ApplicationError):
    def __init__(self, details: Optional[dict] = None):
        super().__init__("Failed to continue triage conversation", details)


class LLMError(ApplicationError):
    """Language-model call failed or returned an unusable tool call."""


class NotificationError(ApplicationError):
    """A notification could not be delivered."""
