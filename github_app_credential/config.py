"""Identity configuration resolved from CLI arguments and the environment.

CLI values win over environment values. Environment variables are read at
call time (never at import time) so tests and wrappers can change them.

Environment variables:
    GITHUB_APP_ID                     — GitHub App ID
    GITHUB_APP_INSTALLATION_ID        — installation ID
    GITHUB_APP_PRIVATE_KEY_PATH       — path to the PEM private key
    GITHUB_APP_PRIVATE_KEY_BASE64     — base64 of the PEM private key
    GITHUB_API_URL                    — API base URL (default https://api.github.com)
    GITHUB_APP_CREDENTIAL_CACHE_DIR   — token cache directory override
    GITHUB_APP_HTTP_TIMEOUT           — token exchange timeout in seconds
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path

import structlog

from github_app_credential.errors import ConfigurationError, InvalidKeyError
from github_app_credential.models import DEFAULT_API_URL, IdentityConfig

logger = structlog.get_logger()

ENV_APP_ID = "GITHUB_APP_ID"
ENV_INSTALLATION_ID = "GITHUB_APP_INSTALLATION_ID"
ENV_PRIVATE_KEY_PATH = "GITHUB_APP_PRIVATE_KEY_PATH"
ENV_PRIVATE_KEY_BASE64 = "GITHUB_APP_PRIVATE_KEY_BASE64"
ENV_API_URL = "GITHUB_API_URL"
ENV_CACHE_DIR = "GITHUB_APP_CREDENTIAL_CACHE_DIR"
ENV_HTTP_TIMEOUT = "GITHUB_APP_HTTP_TIMEOUT"

# Short-lived CLI invocation: fail fast instead of hanging git.
DEFAULT_HTTP_TIMEOUT_SECONDS = 8.0


def _get_env(key: str, default: str = "") -> str:
    """Read an environment variable at call time (never at import time)."""
    return os.getenv(key, default)


def _pick(cli_value: str | None, env_key: str) -> str:
    if cli_value:
        return str(cli_value).strip()
    return _get_env(env_key).strip()


def is_configured() -> bool:
    """Check whether the identity environment is complete.

    The gh wrapper uses this to pass straight through to gh without
    touching the token cache when no App is set up.
    """
    has_ids = all(_get_env(key).strip() for key in (ENV_APP_ID, ENV_INSTALLATION_ID))
    has_key = any(
        _get_env(key).strip() for key in (ENV_PRIVATE_KEY_PATH, ENV_PRIVATE_KEY_BASE64)
    )
    return has_ids and has_key


def decode_base64_key(encoded: str) -> str:
    """Decode a base64-encoded PEM key. Whitespace and newlines are ignored."""
    compact = "".join(encoded.split())
    try:
        return base64.b64decode(compact, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyError(f"GitHub App private key is not valid base64: {exc}") from exc


def read_key_file(path: str | Path) -> str:
    """Read a PEM key file, turning I/O problems into InvalidKeyError."""
    key_path = Path(path).expanduser()
    try:
        return key_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise InvalidKeyError(f"Cannot read GitHub App private key {key_path}: {exc}") from exc


def resolve_identity(
    *,
    app_id: str | None = None,
    installation_id: str | None = None,
    private_key_path: str | None = None,
    base64_key: str | None = None,
    api_url: str | None = None,
) -> IdentityConfig:
    """Build an IdentityConfig from explicit values with environment fallback.

    A key given on the command line (either form) beats any key in the
    environment. When only the environment supplies keys and both forms
    are set, the base64 form wins.

    Raises:
        ConfigurationError: App ID, installation ID or key source missing.
        InvalidKeyError:    Key source present but unreadable/undecodable.
    """
    resolved_app_id = _pick(app_id, ENV_APP_ID)
    resolved_installation_id = _pick(installation_id, ENV_INSTALLATION_ID)
    resolved_api_url = _pick(api_url, ENV_API_URL) or DEFAULT_API_URL

    if base64_key or private_key_path:
        key_b64 = (base64_key or "").strip()
        key_path = "" if key_b64 else (private_key_path or "").strip()
    else:
        key_b64 = _pick(None, ENV_PRIVATE_KEY_BASE64)
        key_path = "" if key_b64 else _pick(None, ENV_PRIVATE_KEY_PATH)

    missing: list[str] = []
    if not resolved_app_id:
        missing.append(ENV_APP_ID)
    if not resolved_installation_id:
        missing.append(ENV_INSTALLATION_ID)
    if not key_b64 and not key_path:
        missing.append(f"{ENV_PRIVATE_KEY_PATH} or {ENV_PRIVATE_KEY_BASE64}")
    if missing:
        raise ConfigurationError(missing)

    private_key = decode_base64_key(key_b64) if key_b64 else read_key_file(key_path)
    if not private_key.strip():
        raise InvalidKeyError("GitHub App private key is empty")

    logger.debug(
        "config.identity_resolved",
        app_id=resolved_app_id,
        installation_id=resolved_installation_id,
        api_url=resolved_api_url,
        key_source="base64" if key_b64 else "path",
    )
    return IdentityConfig(
        app_id=resolved_app_id,
        installation_id=resolved_installation_id,
        private_key=private_key,
        api_url=resolved_api_url,
    )


def get_http_timeout() -> float:
    """Token exchange timeout; falls back to the default on bad values."""
    raw = _get_env(ENV_HTTP_TIMEOUT).strip()
    if not raw:
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        logger.warning("config.invalid_timeout", value=raw)
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    if value <= 0:
        logger.warning("config.invalid_timeout", value=raw)
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    return value
