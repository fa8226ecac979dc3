from __future__ import annotations


class AgentextError(Exception):
    """Base class for all agentext domain errors."""


class SourceNotFoundError(FileNotFoundError, AgentextError):
    """Raised when a local install source does not exist."""


class InvalidLocalOptionsError(ValueError, AgentextError):
    """Raised when remote-only options are given for a local install source."""


class ConsentDeniedError(PermissionError, AgentextError):
    """Raised when the consent gate rejects an installation."""


class ManifestNotFoundError(FileNotFoundError, AgentextError):
    """Raised when an extension manifest is missing or cannot be parsed."""


class ValidationFailedError(ValueError, AgentextError):
    """Raised when an extension manifest fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ExtensionNotFoundError(LookupError, AgentextError):
    """Raised when no discovered extension matches a name or source."""


class InvalidScopeError(ValueError, AgentextError):
    """Raised when a settings scope token is not recognized."""


class InstallConflictError(RuntimeError, AgentextError):
    """Raised when the staging swap fails or an install is already running."""


class NetworkError(ConnectionError, AgentextError):
    """Raised when remote acquisition fails or times out."""


class SettingsWriteError(OSError, AgentextError):
    """Raised when a settings document cannot be read or persisted."""


class UpdateStateTransitionError(RuntimeError, AgentextError):
    """Raised when an extension update state change is not allowed."""
