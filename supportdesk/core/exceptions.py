"""Integration error taxonomy shared by adapters, handlers and the dispatcher."""


class IntegrationError(Exception):
    """Base exception for integration failures."""

    pass


class TransientIntegrationError(IntegrationError):
    """Timeout, 5xx or dropped connection. Retried with backoff."""

    pass


class ProviderError(TransientIntegrationError):
    """AI provider answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientIntegrationError):
    """Provider answered 429. retry_after is in seconds."""

    def __init__(self, message: str = "Rate limited", retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentValidationError(IntegrationError):
    """Malformed payload, missing record or missing configuration. Never retried."""

    pass


class AuthError(IntegrationError):
    """Provider rejected our credentials."""

    pass
