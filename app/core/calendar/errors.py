# app/core/calendar/errors.py
"""
Error taxonomy for calendar sync and reminder dispatch.

``TransientProviderError`` is retried on the next pass, ``CredentialError``
means the user has to reconnect, and ``NotFoundError`` covers both missing
rows and rows owned by someone else.
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base class for every error raised by the calendar subsystem."""


class ProviderError(CalendarSyncError):
    """A provider call failed for a reason that is neither transient nor a credential problem."""

    kind: str = "provider"

    def __init__(self, provider: str, operation: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}.{operation}: {message}")
        self.provider = provider
        self.operation = operation
        self.message = message
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network timeout, transport failure, rate limit or 5xx."""

    kind = "transient"


class CredentialError(ProviderError):
    """Refresh token revoked/invalid or access rejected; the credential needs reconnecting."""

    kind = "credential"


class RemoteEventNotFoundError(ProviderError):
    """The provider has no event with that id (deleted out of band)."""


class NotFoundError(CalendarSyncError):
    """Row does not exist or is not owned by the caller."""


class ReminderStateError(CalendarSyncError):
    """Illegal reminder transition (e.g. dismissing a reminder that was already sent)."""


__all__ = [
    "CalendarSyncError",
    "ProviderError",
    "TransientProviderError",
    "CredentialError",
    "RemoteEventNotFoundError",
    "NotFoundError",
    "ReminderStateError",
]
