from __future__ import annotations


class ShadowSyncError(Exception):
    """Base error for shadowsync."""


class IntegrationUnavailableError(ShadowSyncError):
    """Downstream integration is temporarily unavailable."""


class BreakerOpenError(IntegrationUnavailableError):
    """Circuit breaker is open; the downstream call was not attempted."""

    def __init__(self, name: str, message: str | None = None) -> None:
        super().__init__(message or f"{name} is temporarily unavailable")
        self.name = name


class ResourceExhaustedError(ShadowSyncError):
    """Process resources stayed above the ceiling past the wait budget."""


class EmergencyBrakeError(ResourceExhaustedError):
    """Emergency brakes recurred; the worker is structurally overloaded."""


class DependencyTimeoutError(ShadowSyncError):
    """A stage dependency never became available within its polling budget."""


class UpstreamStageFailedError(ShadowSyncError):
    """An upstream stage reported failure while a dependent stage was waiting."""


class StageFailedError(ShadowSyncError):
    """A pipeline stage finished unsuccessfully."""

    def __init__(self, stage: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.stage = stage
        self.retryable = retryable


class SyncFailedError(ShadowSyncError):
    """A sync run ended in FAILED; the run row already records the reason."""

    def __init__(self, run_id: str, message: str) -> None:
        super().__init__(message)
        self.run_id = run_id


class ProviderError(ShadowSyncError):
    """Identity-provider request failure."""


class ProviderAuthError(ProviderError):
    """Identity-provider authentication/authorization failure."""


class ProviderQuotaError(ProviderError):
    """Identity-provider quota or rate limit exhausted."""


class DatabaseError(ShadowSyncError):
    """Database layer failure."""
