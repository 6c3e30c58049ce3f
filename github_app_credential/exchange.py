"""Exchange an app JWT for an installation access token.

Calls POST /app/installations/{id}/access_tokens exactly once. Retrying is
left to whoever invoked us: a rejected JWT will not succeed on a second
attempt inside the same short-lived process.
"""

from __future__ import annotations

import httpx
import structlog
from pydantic import ValidationError

from github_app_credential import __version__
from github_app_credential.config import DEFAULT_HTTP_TIMEOUT_SECONDS
from github_app_credential.errors import (
    AuthenticationError,
    NetworkError,
    ResponseFormatError,
)
from github_app_credential.models import (
    DEFAULT_API_URL,
    AccessTokenResponse,
    InstallationToken,
    normalize_api_url,
)

logger = structlog.get_logger()

_GITHUB_API_VERSION = "2022-11-28"


def access_tokens_url(api_url: str, installation_id: str | int) -> str:
    """Build the token issuance URL for an installation."""
    base = normalize_api_url(api_url or DEFAULT_API_URL)
    return f"{base}/app/installations/{installation_id}/access_tokens"


def request_installation_token(
    app_jwt: str,
    installation_id: str | int,
    api_url: str = DEFAULT_API_URL,
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> InstallationToken:
    """Exchange a JWT for an installation access token.

    Returns:
        The new InstallationToken with an absolute expiry.

    Raises:
        AuthenticationError: GitHub answered with a non-2xx status.
        NetworkError:        The request failed, timed out or had an invalid URL.
        ResponseFormatError: GitHub answered 2xx with an unusable body.
    """
    url = access_tokens_url(api_url, installation_id)

    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                url,
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": _GITHUB_API_VERSION,
                    "User-Agent": f"github-app-credential/{__version__}",
                },
            )
    except httpx.TimeoutException as exc:
        logger.warning("github_tokens.exchange_timeout", url=url, timeout=timeout)
        raise NetworkError(f"Timed out after {timeout:g}s calling {url}") from exc
    except httpx.InvalidURL as exc:
        # Raised while building the request, so not a RequestError.
        logger.warning("github_tokens.invalid_api_url", url=url, error=str(exc))
        raise NetworkError(f"Invalid GitHub API URL {url}: {exc}") from exc
    except httpx.RequestError as exc:
        logger.warning("github_tokens.exchange_failed", url=url, error=str(exc))
        raise NetworkError(f"Request to {url} failed: {exc}") from exc

    if not response.is_success:
        logger.warning(
            "github_tokens.exchange_rejected",
            installation_id=str(installation_id),
            status_code=response.status_code,
        )
        raise AuthenticationError(response.status_code, response.text)

    try:
        data = AccessTokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise ResponseFormatError(
            response.status_code, response.text, reason=type(exc).__name__
        ) from exc

    token = data.to_token()
    logger.info(
        "github_tokens.installation_token_created",
        installation_id=str(installation_id),
        expires_at=token.expires_at_iso,
        permissions=sorted(token.permissions),
    )
    return token
