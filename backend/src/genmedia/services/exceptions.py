"""Service error hierarchy for provider dispatch and generation lifecycle.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    retryable: bool = False


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    retryable = True


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    retryable = False


# Provider (kie.ai) errors
class ProviderError(ServiceError):
    """Base exception for generation provider errors."""

    pass


class ProviderConfigError(ProviderError, PermanentError):
    """Provider credentials or callback address are not configured."""

    pass


class ProviderNetworkError(ProviderError, TransientError):
    """Network timeout or connection failure talking to the provider."""

    pass


class ProviderHTTPError(ProviderError):
    """Provider answered with a non-2xx HTTP status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"kie.ai API error: {status_code} {body}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code == 429 or self.status_code >= 500


class ProviderResponseError(ProviderError, PermanentError):
    """Provider response body could not be understood."""

    pass


class ProviderApplicationError(ProviderError, PermanentError):
    """Provider returned an error envelope (``code`` other than success)."""

    def __init__(self, code: object, message: str):
        self.code = code
        super().__init__(message)


# Generation lifecycle errors
class GenerationNotFoundError(PermanentError):
    """Generation record referenced by a job does not exist."""

    pass
