from __future__ import annotations


class AccessGatewayError(Exception):
    """Base class for door access gateway errors."""


class CredentialValidationError(AccessGatewayError):
    reason = "INVALID"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CredentialNotFoundError(CredentialValidationError):
    reason = "NOT_FOUND"


class CredentialAlreadyUsedError(CredentialValidationError):
    reason = "ALREADY_USED"


class CredentialTooEarlyError(CredentialValidationError):
    reason = "TOO_EARLY"


class CredentialExpiredError(CredentialValidationError):
    reason = "EXPIRED"


class CredentialConflictError(AccessGatewayError):
    """A credential id is already held by a live credential."""


class TransientIOError(AccessGatewayError):
    """A collaborator (booking source, lock, notifier) could not be reached."""

    def __init__(self, service: str, detail: str) -> None:
        super().__init__(f"{service}: {detail}")
        self.service = service
        self.detail = detail


class GenerationDegraded(AccessGatewayError):
    """Random code generation gave up and the deterministic fallback is used."""
