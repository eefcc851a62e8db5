from typing import Any, Optional


class RelayError(Exception):
    """Base class for failures talking to the relay provider."""

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class RelayNotConfigured(RelayError):
    """A privileged operation was requested but the admin token is missing."""


class RelayAlreadyExists(RelayError):
    """The provider already has an account for this email."""


class RelayInvalidCredentials(RelayError):
    pass


class RelayNotFound(RelayError):
    pass


class RelayUpstreamUnavailable(RelayError):
    """Network failure, timeout, or a response we could not parse."""


class RelayForbidden(RelayError):
    """The provider (or our own degraded-identity guard) refused the operation."""


class RelayInvalidInput(RelayError):
    pass


class VerificationError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CodeNotFound(VerificationError):
    def __init__(self, message: str = "No verification code found. Please request a new code."):
        super().__init__(message)


class CodeExpired(VerificationError):
    def __init__(self, message: str = "Verification code expired. Please request a new code."):
        super().__init__(message)


class CodeMismatch(VerificationError):
    def __init__(self, message: str = "Invalid verification code. Please try again."):
        super().__init__(message)
