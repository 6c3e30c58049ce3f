"""On-disk installation token cache shared by concurrent invocations.

Each git or gh call runs the broker as its own short-lived process, so the
only shared state is one JSON file. Writes go to a temp file in the same
directory and are moved into place with os.replace: a reader sees either
the previous entry or the new one, never a partial file. No locks are
taken; concurrent cache misses may each mint a token and the last rename
wins, which is fine because every minted token is valid for its full
lifetime.

Anything wrong with the file on read (missing, corrupt, other identity,
about to expire) is a cache miss, never an error.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import time
from pathlib import Path

import structlog
from pydantic import ValidationError

from github_app_credential.config import ENV_CACHE_DIR
from github_app_credential.errors import CacheWriteError
from github_app_credential.models import CachedTokenDocument, Identity, InstallationToken

logger = structlog.get_logger()

# Refresh installation tokens when within this many seconds of expiry.
TOKEN_EXPIRY_BUFFER_SECONDS = 300
CACHE_FILE_NAME = "token.json"
_DIR_MODE = 0o700
_FILE_MODE = 0o600


def _get_env(key: str, default: str = "") -> str:
    """Read env var at call time."""
    return os.getenv(key, default)


def get_cache_dir() -> Path:
    """Return the cache directory.

    Order: GITHUB_APP_CREDENTIAL_CACHE_DIR, $XDG_CACHE_HOME/github-app-credential,
    ~/.cache/github-app-credential.
    """
    override = _get_env(ENV_CACHE_DIR)
    if override:
        return Path(override).expanduser()
    xdg = _get_env("XDG_CACHE_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".cache"
    return base / "github-app-credential"


class TokenCache:
    """File-backed cache holding at most one installation token.

    Args:
        cache_dir:      Directory for the cache file. Defaults to get_cache_dir().
        buffer_seconds: Tokens closer than this to expiry are treated as absent.
    """

    def __init__(
        self,
        cache_dir: Path | str | None = None,
        buffer_seconds: float = TOKEN_EXPIRY_BUFFER_SECONDS,
    ) -> None:
        self.cache_dir = Path(cache_dir).expanduser() if cache_dir else get_cache_dir()
        self.buffer_seconds = buffer_seconds

    @property
    def path(self) -> Path:
        return self.cache_dir / CACHE_FILE_NAME

    def load(self, identity: Identity, now: float | None = None) -> InstallationToken | None:
        """Return the cached token for ``identity`` if it is still usable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("credential_cache.miss", reason="missing", path=str(self.path))
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("credential_cache.miss", reason="unreadable", error=str(exc))
            return None

        try:
            document = CachedTokenDocument.model_validate_json(raw)
        except ValidationError as exc:
            logger.debug(
                "credential_cache.miss", reason="malformed", errors=exc.error_count()
            )
            return None

        if document.identity != identity:
            logger.debug(
                "credential_cache.miss",
                reason="identity_mismatch",
                cached_app_id=document.app_id,
                cached_installation_id=document.installation_id,
            )
            return None

        token = document.to_token()
        current = time.time() if now is None else now
        if not token.is_fresh(current, self.buffer_seconds):
            logger.debug(
                "credential_cache.miss",
                reason="expiring",
                seconds_remaining=int(token.seconds_remaining(current)),
            )
            return None

        logger.debug(
            "credential_cache.hit",
            installation_id=identity.installation_id,
            seconds_remaining=int(token.seconds_remaining(current)),
        )
        return token

    def store(self, identity: Identity, token: InstallationToken) -> bool:
        """Persist ``token`` for ``identity``. Best effort: failures only warn.

        Returns:
            True if the cache file was written.
        """
        document = CachedTokenDocument.from_token(identity, token)
        try:
            self._write_atomic(document.model_dump_json(indent=2) + "\n")
        except CacheWriteError as exc:
            logger.warning("credential_cache.store_failed", path=str(self.path), error=str(exc))
            return False
        logger.debug(
            "credential_cache.stored",
            installation_id=identity.installation_id,
            expires_at=token.expires_at_iso,
        )
        return True

    def clear(self, only_token: str | None = None) -> bool:
        """Delete the cache file.

        Args:
            only_token: If given, delete only when the file holds this token.

        Returns:
            True if a file was removed.
        """
        if only_token is not None:
            try:
                document = CachedTokenDocument.model_validate_json(
                    self.path.read_text(encoding="utf-8")
                )
            except (OSError, UnicodeDecodeError, ValidationError):
                return False
            if document.token != only_token:
                return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("credential_cache.clear_failed", path=str(self.path), error=str(exc))
            return False
        logger.info("credential_cache.cleared", path=str(self.path))
        return True

    # ── Internals ────────────────────────────────────────────────────────────

    def _ensure_dir(self) -> None:
        if self.cache_dir.is_dir():
            return
        self.cache_dir.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
        # mkdir honours umask; force owner-only on the directory we created.
        os.chmod(self.cache_dir, _DIR_MODE)

    def _write_atomic(self, content: str) -> None:
        tmp_path: str | None = None
        try:
            self._ensure_dir()
            # mkstemp creates the file 0600 with a unique name per writer.
            fd, tmp_path = tempfile.mkstemp(
                dir=self.cache_dir, prefix=f".{CACHE_FILE_NAME}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(content)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            # Tighten even if an older file had looser permissions.
            os.chmod(self.path, _FILE_MODE)
        except OSError as exc:
            raise CacheWriteError(str(exc)) from exc
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
