"""Custom exceptions for KeySudo."""

from typing import Any


class KeySudoError(Exception):
    """Base exception for all KeySudo errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def snapshot(self) -> str | None:
        """Snapshot path to roll back to, when one was taken."""
        return self.details.get("snapshot")


class NotFoundError(KeySudoError):
    """Raised when an expected input file is missing."""


class ValidationError(KeySudoError):
    """Raised when a credential record or policy value is malformed."""


class ConfigError(KeySudoError):
    """Raised when the settings file cannot be loaded or validated."""


class SnapshotError(KeySudoError):
    """Raised when a snapshot of the stack file cannot be created."""


class InvariantError(KeySudoError):
    """Raised when a composed stack fails a post-composition check."""


class DuplicateOwnedLineError(InvariantError):
    """Raised when the stack file already holds more than one owned line."""


class PatchError(KeySudoError):
    """Raised when writing the patched stack file fails."""


class MergeError(KeySudoError):
    """Raised when writing the mapping store fails."""


class RegistrationError(KeySudoError):
    """Raised when the external registration tool fails."""
