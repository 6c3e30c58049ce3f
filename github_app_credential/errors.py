"""Exception taxonomy for the GitHub App credential broker.

Every failure the broker can surface derives from BrokerError so the CLI
can turn it into a single non-zero exit. Cache read problems never show up
here; they are treated as a cold cache.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for all broker failures."""


class ConfigurationError(BrokerError):
    """Raised when required identity fields are missing.

    In fallback contexts (``--token``, credential ``get``, the gh wrapper)
    this means "not applicable" rather than failure.
    """

    def __init__(self, missing: list[str] | None = None, message: str = "") -> None:
        self.missing = list(missing or [])
        if not message:
            message = "Missing GitHub App configuration: " + ", ".join(self.missing)
        super().__init__(message)


class InvalidKeyError(BrokerError):
    """Raised when the private key cannot be loaded or used for signing."""


class NetworkError(BrokerError):
    """Raised on transport failures or timeouts talking to the GitHub API."""


class AuthenticationError(BrokerError):
    """Raised when GitHub rejects the app JWT or the installation."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            f"Failed to generate installation token: HTTP {status_code}\n{body[:2000]}"
        )


class ResponseFormatError(BrokerError):
    """Raised when GitHub answers 2xx with a body we cannot use."""

    def __init__(self, status_code: int, body: str, reason: str = "") -> None:
        self.status_code = status_code
        self.body = body
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Unexpected installation token response: HTTP {status_code}{detail}"
        )


class CacheWriteError(BrokerError):
    """Raised internally when the token cache cannot be persisted."""
