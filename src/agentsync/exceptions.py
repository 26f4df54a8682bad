"""Custom exceptions for agentsync."""

from typing import Any


class AgentSyncError(Exception):
    """Base exception for all agentsync errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}


class ConfigError(AgentSyncError):
    """Raised when a canonical or downstream config file is invalid."""


class SourceValidationError(AgentSyncError):
    """Raised when a canonical source is missing required paths."""


class SourceResolutionError(AgentSyncError):
    """Raised when a source specifier cannot be turned into a snapshot."""


class LedgerError(AgentSyncError):
    """Raised when the ledger file cannot be read or parsed."""


class LedgerCompatibilityError(AgentSyncError):
    """Raised when the ledger schema major version is not supported."""

    UPGRADE_REQUIRED = "upgrade_required"
    MIGRATION_REQUIRED = "migration_required"

    def __init__(
        self,
        message: str,
        kind: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.kind = kind


class ManagedDocumentError(AgentSyncError):
    """Raised when managed block markers are duplicated, unmatched or nested."""
