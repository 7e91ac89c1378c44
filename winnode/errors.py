"""
Error taxonomy for the Windows node lifecycle.

Every failure raised by the core derives from `WinNodeError` so the HTTP
layer (and any other caller) can map it without knowing about boto3,
requests or the kubernetes client.
"""

from typing import Optional


class WinNodeError(Exception):
    """Base class for every error raised by winnode."""


class NotFoundError(WinNodeError):
    """An expected cluster resource does not exist."""


class AmbiguousResourceError(WinNodeError):
    """More than one resource matched a filter that must be unique."""

    def __init__(self, what: str, candidates: list[str]) -> None:
        super().__init__(
            f"expected exactly one {what} but found {len(candidates)}: "
            f"{', '.join(candidates)}"
        )
        self.what = what
        self.candidates = candidates


class ProviderAPIError(WinNodeError):
    """A call to the cloud provider (or another remote collaborator) failed."""

    def __init__(self, operation: str, detail: str, code: str = "", **identifiers: str) -> None:
        ids = ", ".join(f"{k}={v}" for k, v in identifiers.items())
        message = f"{operation} failed"
        if ids:
            message += f" ({ids})"
        super().__init__(f"{message}: {detail}")
        self.operation = operation
        self.code = code
        self.identifiers = identifiers


class ResourceInUseError(ProviderAPIError):
    """The resource still has dependents, e.g. a security group on a live instance."""


class JoinError(ProviderAPIError):
    """The instance could not be attached to the cluster's worker SG / profile."""


class WaitTimeoutError(WinNodeError, TimeoutError):
    """A polling loop ran out of time (or the caller's deadline expired)."""

    def __init__(self, description: str, timeout: float, last_result: object = None) -> None:
        super().__init__(f"timed out after {timeout:.1f}s waiting for {description}")
        self.description = description
        self.timeout = timeout
        self.last_result = last_result


class TerminationTimeoutError(WaitTimeoutError):
    """Instances did not reach the terminated state in time."""


class LedgerCorruptError(WinNodeError):
    """The ledger file exists but cannot be parsed; ownership is unknown."""


class CredentialsError(WinNodeError):
    """The Windows password could not be decrypted with the key pair."""


class ResourcesAlreadyOwnedError(WinNodeError):
    """Create was called while the ledger still lists resources."""


class UnsupportedProviderError(WinNodeError):
    """The provider factory has no variant for the requested platform."""


class PartialFailureError(WinNodeError):
    """
    Some, but not all, resources of a bundle were created or destroyed.

    Raised after the automatic remediation pass.  `remaining` is the ledger
    as it stands afterwards; `remediation_error` is set when the cleanup
    itself failed.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        remaining: object = None,
        remediation_error: Optional[BaseException] = None,
    ) -> None:
        if remediation_error is not None:
            message = f"{message}; cleanup also failed: {remediation_error}"
        super().__init__(message)
        self.stage = stage
        self.remaining = remaining
        self.remediation_error = remediation_error
