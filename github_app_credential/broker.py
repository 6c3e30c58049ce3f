"""Short-lived GitHub App installation token broker.

Generates a JWT signed with the App's private key, exchanges it for an
installation access token and caches the result on disk so repeated git and
gh invocations reuse one token until it is within 5 minutes of expiry.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from github_app_credential.cache import TokenCache
from github_app_credential.config import get_http_timeout, resolve_identity
from github_app_credential.errors import ConfigurationError
from github_app_credential.exchange import request_installation_token
from github_app_credential.jwt_signer import generate_app_jwt
from github_app_credential.models import IdentityConfig, InstallationToken

logger = structlog.get_logger()


@dataclass
class TokenBroker:
    """Returns valid installation tokens, minting new ones only on a cache miss.

    Args:
        cache:   Token cache. Defaults to the per-user cache directory.
        timeout: Exchange timeout in seconds. Defaults to GITHUB_APP_HTTP_TIMEOUT or 8s.
    """

    cache: TokenCache = field(default_factory=TokenCache)
    timeout: float | None = None

    def get_token(self, config: IdentityConfig, force_refresh: bool = False) -> InstallationToken:
        """Return a valid installation token for ``config``.

        Raises:
            InvalidKeyError:     The private key cannot sign.
            AuthenticationError: GitHub rejected the JWT or installation.
            NetworkError:        The exchange request failed or timed out.
            ResponseFormatError: GitHub's response was unusable.
        """
        identity = config.identity
        if not force_refresh:
            cached = self.cache.load(identity)
            if cached is not None:
                logger.debug("github_tokens.cache_hit", installation_id=identity.installation_id)
                return cached

        logger.info(
            "github_tokens.refreshing",
            app_id=identity.app_id,
            installation_id=identity.installation_id,
            forced=force_refresh,
        )
        app_jwt = generate_app_jwt(config.app_id, config.private_key)
        timeout = self.timeout if self.timeout is not None else get_http_timeout()
        token = request_installation_token(
            app_jwt,
            config.installation_id,
            api_url=config.api_url,
            timeout=timeout,
        )
        self.cache.store(identity, token)
        return token

    def invalidate(self, token: str | None = None) -> bool:
        """Drop the cached token (only if it matches ``token`` when given)."""
        return self.cache.clear(only_token=token)

    def get_token_if_configured(
        self, force_refresh: bool = False, **identity_values: str | None
    ) -> InstallationToken | None:
        """Fallback entry point for wrappers.

        Returns None when the App identity is absent or incomplete so the
        caller can fall back to whatever credentials it already has. Any
        other failure (bad key, rejected JWT, network) still raises.
        """
        try:
            config = resolve_identity(**identity_values)
        except ConfigurationError as exc:
            logger.debug("credential.not_configured", missing=exc.missing)
            return None
        return self.get_token(config, force_refresh=force_refresh)
