"""
Error taxonomy for the compose pipeline.

Every error carries the HTTP status the boundary should answer with, so the
request handlers can turn any of them into a JSON error payload without
string-matching on messages.
"""

from typing import Optional


class ComposerError(Exception):
    """Base class for all errors surfaced by the compose service."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ComposerError):
    """No usable provider credentials (or an incomplete Vertex setup)."""


class CredentialParseError(ConfigurationError):
    """A supplied service-account JSON blob could not be parsed."""


class InvalidInputError(ComposerError):
    """Missing or malformed request input. Raised before any provider call."""

    status_code = 400


class InvalidMediaError(InvalidInputError):
    """Upload is empty, of an unaccepted type, or not a decodable image."""


class ProviderError(ComposerError):
    """Failure of a single provider call while resolving a candidate list."""


class ProviderHTTPError(ProviderError):
    """Provider answered with a non-2xx status, or the transport failed (status None)."""

    def __init__(self, message: str, *, status: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status = status
        self.detail = detail


class ModelUnavailableError(ProviderHTTPError):
    """403/404 from the provider: the model is missing or not enabled for this project."""


class UpstreamFault(ProviderHTTPError):
    """Non-recoverable provider error that must not fall through to the next candidate."""


class EmptyOutputError(ProviderError):
    """The call succeeded but produced nothing usable (blank text, empty image array)."""


class UnparsableResponseError(ProviderError):
    """The call succeeded but no recognizable image payload could be located or decoded."""


class DeadlineExceeded(ProviderError):
    """The overall request deadline passed before a candidate succeeded."""


class ProviderUnavailableError(ComposerError):
    """Every fallback candidate of a step was tried and none succeeded."""

    def __init__(self, message: str, *, step: str, candidate: Optional[str], attempts: int):
        super().__init__(message)
        self.step = step
        self.candidate = candidate
        self.attempts = attempts
