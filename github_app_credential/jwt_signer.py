"""GitHub App JWT generation.

The app JWT authenticates as the App itself (not an installation) and is
only ever exchanged for an installation token; it is never cached.
"""

from __future__ import annotations

import time

import jwt
import structlog
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from github_app_credential.errors import ConfigurationError, InvalidKeyError

logger = structlog.get_logger()

# GitHub App JWT lifetime: 10 minutes (GitHub max).
_JWT_LIFETIME_SECONDS = 600
# Backdate iat to tolerate clock drift between us and GitHub.
_CLOCK_SKEW_SECONDS = 60


def load_private_key(private_key: str) -> rsa.RSAPrivateKey:
    """Parse a PEM RSA private key (PKCS#1 or PKCS#8, unencrypted).

    Raises:
        InvalidKeyError: The text is not a usable RSA private key.
    """
    try:
        key = serialization.load_pem_private_key(
            private_key.strip().encode("utf-8"), password=None
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise InvalidKeyError(f"Invalid GitHub App private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidKeyError(
            f"GitHub App private key must be RSA, got {type(key).__name__}"
        )
    return key


def generate_app_jwt(app_id: str | int, private_key: str, now: float | None = None) -> str:
    """Generate a short-lived RS256 JWT for GitHub App authentication.

    Args:
        app_id:      GitHub App ID, used as the ``iss`` claim.
        private_key: PEM-encoded RSA private key.
        now:         Override for the current time (unix seconds).

    Returns:
        Encoded JWT string.

    Raises:
        ConfigurationError: ``app_id`` is empty.
        InvalidKeyError:    The key cannot be parsed or used to sign.
    """
    issuer = str(app_id).strip()
    if not issuer:
        raise ConfigurationError(["GITHUB_APP_ID"])

    key = load_private_key(private_key)
    issued = int(now if now is not None else time.time())
    payload = {
        "iat": issued - _CLOCK_SKEW_SECONDS,
        "exp": issued + _JWT_LIFETIME_SECONDS,
        "iss": issuer,
    }
    try:
        encoded: str = jwt.encode(payload, key, algorithm="RS256")
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise InvalidKeyError(f"Cannot sign GitHub App JWT: {exc}") from exc

    logger.debug("github_tokens.jwt_generated", app_id=issuer)
    return encoded
