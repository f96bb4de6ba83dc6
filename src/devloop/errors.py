from __future__ import annotations


class DevloopError(RuntimeError):
    """Base class for orchestrator errors."""


class ConfigError(DevloopError):
    """Raised when configuration or reviewer checklists cannot be used."""


class RunStateError(DevloopError):
    """Raised when run-state operations fail or persisted state is unusable."""


class GatewayError(DevloopError):
    """Raised when a worker invocation cannot be completed, even after fallback."""

    def __init__(self, message: str, *, role: str | None = None) -> None:
        super().__init__(message)
        self.role = role


class VerificationError(DevloopError):
    """Raised when the verification pipeline cannot be invoked at all."""
