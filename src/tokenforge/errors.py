from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import Job


class TokenForgeError(Exception):
    """Base error. `detail` holds captured process output or raw remote text."""

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConfigError(TokenForgeError, ValueError):
    pass


class InvalidInput(TokenForgeError):
    pass


class InvalidModuleCombination(InvalidInput):
    def __init__(self, kind: str, offending: Iterable[str], reason: str) -> None:
        self.kind = kind
        self.offending = sorted(offending)
        super().__init__(f"{reason} for {kind}: {', '.join(self.offending)}")


class InvalidHandler(InvalidInput):
    pass


class UnknownArtifact(TokenForgeError):
    pass


class ArtifactNotFound(TokenForgeError):
    pass


class DeploymentExecutionFailed(TokenForgeError):
    pass


class DeploymentOutputMissing(DeploymentExecutionFailed):
    pass


class JobNotFound(TokenForgeError):
    pass


class DeploymentTimedOut(TokenForgeError):
    pass


class JobFailed(TokenForgeError):
    def __init__(self, job: Job) -> None:
        error = job.error
        message = error.message if error else "Job failed"
        super().__init__(message, detail=error.detail if error else None)
        self.job = job
        self.error_type = error.error_type if error else None


class RegistrarError(TokenForgeError):
    pass


class VerificationFailed(TokenForgeError):
    pass


class VerificationRetryable(TokenForgeError):
    pass
