"""Custom exception hierarchy for pyautocollect."""

from __future__ import annotations


class AutoCollectError(Exception):
    """Base exception for all pyautocollect errors."""


class AutoCollectConfigError(AutoCollectError):
    """Invalid detection or runtime configuration."""


class AutoCollectStorageError(AutoCollectError):
    """Key/value persistence failure (storage unavailable, quota, corrupt file)."""


class AutoCollectTransportError(AutoCollectError):
    """HTTP-level failure talking to the fleet backend (network, non-200, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class AutoCollectCollaboratorError(AutoCollectError):
    """A required external collaborator is missing (e.g. no logged-in user to attribute a collection to)."""
