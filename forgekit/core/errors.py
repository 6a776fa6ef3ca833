"""Exception hierarchy for the deploy pipeline.

Every error carries an operator-facing message and an optional list of
remediation hints. The CLI prints both; core code never prints.
"""
from typing import List, Optional


class ForgeError(Exception):
    """Base class for all ForgeKit failures."""

    def __init__(self, message: str, hints: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.hints = list(hints or [])


# Authentication


class AuthenticationError(ForgeError):
    """Missing, expired or invalid credential."""

    def __init__(self, message: str, hints: Optional[List[str]] = None):
        super().__init__(message, hints or ["Run `forge login` to authenticate"])


class TokenFormatError(AuthenticationError):
    """Token is not a well-formed, unexpired JWT."""


class LoginError(AuthenticationError):
    """Browser login handshake did not produce a token."""


class LoginTimeoutError(LoginError):
    """No callback arrived before the login timeout."""


class LoginRejectedError(LoginError):
    """Identity provider reported an error on the callback."""

    def __init__(self, error: str, description: Optional[str] = None):
        reason = f"{error}: {description}" if description else error
        super().__init__(f"Login rejected by identity provider ({reason})")
        self.error = error
        self.description = description


class NoAvailablePortError(LoginError):
    """Every candidate callback port was already bound."""


# Local checks


class ProjectConfigError(ForgeError):
    """forgekit.json is missing or malformed."""


class ValidationError(ForgeError):
    """One or more readiness checks failed; lists every violation."""

    def __init__(self, message: str, errors: List[str], warnings: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors)
        self.warnings = list(warnings or [])

    def __str__(self) -> str:
        lines = [self.message] + [f"  - {err}" for err in self.errors]
        return "\n".join(lines)


class BuildError(ForgeError):
    """Build command failed after every retry.

    Attributes:
        command: The command line that was run
        attempts: Captured output of each failed attempt, oldest first
    """

    def __init__(self, message: str, command: str = "", attempts=None, hints: Optional[List[str]] = None):
        super().__init__(message, hints)
        self.command = command
        self.attempts = list(attempts or [])


class BundleError(ForgeError):
    """Archive could not be produced (empty file set or write failure)."""


# Network


class TransportError(ForgeError):
    """Base class for failures talking to the deploy API."""


class NetworkError(TransportError):
    """Connection failure or timeout; safe to retry."""


class ServerError(TransportError):
    """Server answered with a 5xx status."""

    GENERIC_MESSAGE = "Server error occurred. Please try again later."

    def __init__(self, status: int):
        super().__init__(self.GENERIC_MESSAGE)
        self.status = status


class HTTPStatusError(TransportError):
    """Server answered with a 4xx status."""

    def __init__(self, status: int, message: str, body=None):
        super().__init__(message)
        self.status = status
        self.body = body


class ResponseValidationError(TransportError):
    """Response body was missing, oversized or malformed."""


class SecurityError(TransportError):
    """Potential interception or tampering; never retried."""


class CertificateError(SecurityError):
    """Peer certificate failed validation."""


class UntrustedHostError(SecurityError):
    """Request target is outside the allowed domain family."""


class SuspiciousResponseError(SecurityError):
    """Deployment response failed integrity checks."""


class UploadError(ForgeError):
    """Bundle upload failed.

    Attributes:
        status: HTTP status when the server answered, else None
        retryable: True when a later attempt may succeed (network or 5xx)
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        hints: Optional[List[str]] = None,
        retryable: bool = False,
    ):
        super().__init__(message, hints)
        self.status = status
        self.retryable = retryable
