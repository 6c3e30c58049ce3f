"""
Domain models for the credential broker.

Identity and InstallationToken are frozen dataclasses: once built they are
trusted everywhere downstream. Data crossing a boundary (the GitHub API
response, the cache file on disk) is parsed with pydantic models first and
only then turned into domain objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from github_app_credential.errors import ConfigurationError

DEFAULT_API_URL = "https://api.github.com"

# 9999-12-31T23:59:59.999Z, the last instant datetime can represent.
_MAX_EXPIRES_AT_MS = 253_402_300_799_999


def normalize_api_url(api_url: str) -> str:
    """Strip whitespace and trailing slashes so identities compare cleanly."""
    return api_url.strip().rstrip("/")


@dataclass(frozen=True)
class Identity:
    """The non-secret fields that decide whether a cached token may be reused."""

    app_id: str
    installation_id: str
    api_url: str


@dataclass(frozen=True)
class IdentityConfig:
    """Everything needed to mint an installation token for one GitHub App.

    Attributes:
        app_id:          GitHub App ID.
        installation_id: Installation ID for the target org/user account.
        private_key:     PEM-encoded RSA private key text.
        api_url:         GitHub API base URL (GHES uses ``https://host/api/v3``).
    """

    app_id: str
    installation_id: str
    private_key: str = field(repr=False)
    api_url: str = DEFAULT_API_URL

    def __post_init__(self) -> None:
        # Accept ints from library callers; compare as strings everywhere.
        object.__setattr__(self, "app_id", str(self.app_id).strip())
        object.__setattr__(self, "installation_id", str(self.installation_id).strip())
        object.__setattr__(self, "api_url", normalize_api_url(self.api_url or DEFAULT_API_URL))
        missing = [
            name
            for name, value in (
                ("app_id", self.app_id),
                ("installation_id", self.installation_id),
                ("private_key", self.private_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(missing)

    @property
    def identity(self) -> Identity:
        return Identity(
            app_id=self.app_id,
            installation_id=self.installation_id,
            api_url=self.api_url,
        )


@dataclass(frozen=True)
class InstallationToken:
    """A usable installation access token and what it grants."""

    token: str = field(repr=False)
    expires_at: float  # Unix timestamp
    permissions: dict[str, str] = field(default_factory=dict)
    repositories: list[str] | None = None

    @property
    def expires_at_ms(self) -> int:
        return int(round(self.expires_at * 1000))

    @property
    def expires_at_iso(self) -> str:
        return datetime.fromtimestamp(self.expires_at, tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

    def seconds_remaining(self, now: float) -> float:
        return self.expires_at - now

    def is_fresh(self, now: float, buffer_seconds: float) -> bool:
        """True while the token is more than ``buffer_seconds`` away from expiry."""
        return self.expires_at_ms - int(now * 1000) > int(buffer_seconds * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Structured form used for ``--json`` output."""
        return {
            "token": self.token,
            "expires_at": self.expires_at_iso,
            "expires_at_ms": self.expires_at_ms,
            "permissions": dict(self.permissions),
            "repositories": list(self.repositories) if self.repositories is not None else None,
        }


# ── Boundary models ──────────────────────────────────────────────────────────


class RepositoryRef(BaseModel):
    """The subset of a repository object we keep from the token response."""

    model_config = ConfigDict(extra="ignore")

    name: str
    full_name: str | None = None


class AccessTokenResponse(BaseModel):
    """Body of POST /app/installations/{id}/access_tokens."""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)
    expires_at: datetime
    permissions: dict[str, str] = Field(default_factory=dict)
    repositories: list[RepositoryRef] | None = None

    def to_token(self) -> InstallationToken:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            # GitHub always sends UTC; treat a naive value the same way.
            expires_at = expires_at.replace(tzinfo=UTC)
        repositories = None
        if self.repositories is not None:
            repositories = [r.full_name or r.name for r in self.repositories]
        return InstallationToken(
            token=self.token,
            expires_at=expires_at.timestamp(),
            permissions=dict(self.permissions),
            repositories=repositories,
        )


class CachedTokenDocument(BaseModel):
    """On-disk layout of the token cache file."""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)
    expires_at_ms: int = Field(gt=0, le=_MAX_EXPIRES_AT_MS)
    permissions: dict[str, str] = Field(default_factory=dict)
    repositories: list[str] | None = None
    app_id: str
    installation_id: str
    api_url: str

    @classmethod
    def from_token(cls, identity: Identity, token: InstallationToken) -> CachedTokenDocument:
        return cls(
            token=token.token,
            expires_at_ms=token.expires_at_ms,
            permissions=dict(token.permissions),
            repositories=list(token.repositories) if token.repositories is not None else None,
            app_id=identity.app_id,
            installation_id=identity.installation_id,
            api_url=identity.api_url,
        )

    @property
    def identity(self) -> Identity:
        return Identity(
            app_id=self.app_id,
            installation_id=self.installation_id,
            api_url=normalize_api_url(self.api_url),
        )

    def to_token(self) -> InstallationToken:
        return InstallationToken(
            token=self.token,
            expires_at=self.expires_at_ms / 1000,
            permissions=dict(self.permissions),
            repositories=list(self.repositories) if self.repositories is not None else None,
        )
