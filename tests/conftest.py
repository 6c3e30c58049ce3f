"""
Shared pytest fixtures for the credential broker tests.

Provides:
- An RSA test key (PEM text and on-disk file)
- A clean GitHub App environment with the cache redirected to tmp_path
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from github_app_credential.models import IdentityConfig

TEST_APP_ID = "123456"
TEST_INSTALLATION_ID = "98765"

_IDENTITY_ENV_VARS = (
    "GITHUB_APP_ID",
    "GITHUB_APP_INSTALLATION_ID",
    "GITHUB_APP_PRIVATE_KEY_PATH",
    "GITHUB_APP_PRIVATE_KEY_BASE64",
    "GITHUB_API_URL",
    "GITHUB_APP_CREDENTIAL_CACHE_DIR",
    "GITHUB_APP_HTTP_TIMEOUT",
    "GH_REAL_PATH",
    "GH_TOKEN",
    "XDG_CACHE_HOME",
    "LOG_LEVEL",
    "LOG_PRETTY",
)


def _generate_test_private_key() -> str:
    """Generate a fresh RSA private key in PEM format for testing."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return pem.decode("utf-8")


# Module-level test key (generated once per test session).
TEST_PRIVATE_KEY = _generate_test_private_key()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Strip App env vars and point the cache at a per-test directory."""
    for key in _IDENTITY_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    cache_dir = tmp_path / "cache"
    monkeypatch.setenv("GITHUB_APP_CREDENTIAL_CACHE_DIR", str(cache_dir))
    return cache_dir


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Undo structlog configuration done by CLI entry points."""
    yield
    structlog.reset_defaults()


@pytest.fixture()
def private_key() -> str:
    return TEST_PRIVATE_KEY


@pytest.fixture()
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "app.pem"
    path.write_text(TEST_PRIVATE_KEY)
    return path


@pytest.fixture()
def identity_config() -> IdentityConfig:
    return IdentityConfig(
        app_id=TEST_APP_ID,
        installation_id=TEST_INSTALLATION_ID,
        private_key=TEST_PRIVATE_KEY,
    )


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, key_file: Path) -> dict[str, str]:
    """Fully configured GitHub App environment. Returns the dict for inspection."""
    values = {
        "GITHUB_APP_ID": TEST_APP_ID,
        "GITHUB_APP_INSTALLATION_ID": TEST_INSTALLATION_ID,
        "GITHUB_APP_PRIVATE_KEY_PATH": str(key_file),
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return values

