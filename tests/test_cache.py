"""Tests for github_app_credential.cache — the on-disk token cache."""

from __future__ import annotations

import json
import os
import stat
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from github_app_credential.cache import (
    TOKEN_EXPIRY_BUFFER_SECONDS,
    TokenCache,
    get_cache_dir,
)
from github_app_credential.models import Identity, InstallationToken

_IDENTITY = Identity(app_id="123456", installation_id="98765", api_url="https://api.github.com")


def _token(value: str = "ghs_cached", expires_in: float = 3600, now: float | None = None) -> InstallationToken:
    base = time.time() if now is None else now
    return InstallationToken(
        token=value,
        expires_at=base + expires_in,
        permissions={"contents": "read"},
        repositories=["acme/widgets"],
    )


@pytest.fixture()
def cache(tmp_path: Path) -> TokenCache:
    return TokenCache(cache_dir=tmp_path / "creds")


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


# ── Cache directory resolution ──────────────────────────────────────────────


class TestGetCacheDir:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GITHUB_APP_CREDENTIAL_CACHE_DIR", str(tmp_path / "x"))
        assert get_cache_dir() == tmp_path / "x"

    def test_xdg_cache_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GITHUB_APP_CREDENTIAL_CACHE_DIR", raising=False)
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        assert get_cache_dir() == tmp_path / "github-app-credential"

    def test_home_default(self, monkeypatch):
        monkeypatch.delenv("GITHUB_APP_CREDENTIAL_CACHE_DIR", raising=False)
        monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
        assert get_cache_dir() == Path.home() / ".cache" / "github-app-credential"


# ── Round trip ──────────────────────────────────────────────────────────────


class TestStoreAndLoad:
    def test_load_returns_stored_token(self, cache):
        stored = _token()
        assert cache.store(_IDENTITY, stored) is True

        loaded = cache.load(_IDENTITY)
        assert loaded is not None
        assert loaded.token == "ghs_cached"
        assert loaded.expires_at_ms == stored.expires_at_ms
        assert loaded.permissions == {"contents": "read"}
        assert loaded.repositories == ["acme/widgets"]

    def test_file_layout(self, cache):
        stored = _token()
        cache.store(_IDENTITY, stored)

        data = json.loads(cache.path.read_text())
        assert data == {
            "token": "ghs_cached",
            "expires_at_ms": stored.expires_at_ms,
            "permissions": {"contents": "read"},
            "repositories": ["acme/widgets"],
            "app_id": "123456",
            "installation_id": "98765",
            "api_url": "https://api.github.com",
        }

    def test_missing_file_is_miss(self, cache):
        assert cache.load(_IDENTITY) is None


# ── Expiry buffer ───────────────────────────────────────────────────────────


class TestExpiryBuffer:
    """Tokens within 5 minutes of expiry must never be returned."""

    @pytest.mark.parametrize("remaining", [0, 1, 120, 299, 300])
    def test_within_buffer_is_miss(self, cache, remaining):
        now = 1_700_000_000.0
        cache.store(_IDENTITY, _token(expires_in=remaining, now=now))
        assert cache.load(_IDENTITY, now=now) is None

    @pytest.mark.parametrize("remaining", [301, 600, 3600])
    def test_outside_buffer_is_hit(self, cache, remaining):
        now = 1_700_000_000.0
        cache.store(_IDENTITY, _token(expires_in=remaining, now=now))
        assert cache.load(_IDENTITY, now=now) is not None

    def test_already_expired_is_miss(self, cache):
        now = 1_700_000_000.0
        cache.store(_IDENTITY, _token(expires_in=-60, now=now))
        assert cache.load(_IDENTITY, now=now) is None

    def test_same_entry_turns_into_miss_as_time_passes(self, cache):
        now = 1_700_000_000.0
        cache.store(_IDENTITY, _token(expires_in=3600, now=now))
        assert cache.load(_IDENTITY, now=now + 3000) is not None
        assert cache.load(_IDENTITY, now=now + 3600 - TOKEN_EXPIRY_BUFFER_SECONDS) is None

    def test_custom_buffer(self, tmp_path):
        cache = TokenCache(cache_dir=tmp_path, buffer_seconds=10)
        now = 1_700_000_000.0
        cache.store(_IDENTITY, _token(expires_in=60, now=now))
        assert cache.load(_IDENTITY, now=now) is not None


# ── Identity isolation ──────────────────────────────────────────────────────


class TestIdentityIsolation:
    @pytest.mark.parametrize(
        "other",
        [
            Identity(app_id="999", installation_id="98765", api_url="https://api.github.com"),
            Identity(app_id="123456", installation_id="1", api_url="https://api.github.com"),
            Identity(app_id="123456", installation_id="98765", api_url="https://ghe.example.com/api/v3"),
        ],
    )
    def test_entry_for_other_identity_is_miss(self, cache, other):
        cache.store(_IDENTITY, _token())
        assert cache.load(other) is None
        # The original owner still gets a hit.
        assert cache.load(_IDENTITY) is not None

    def test_api_url_trailing_slash_in_file_still_matches(self, cache):
        cache.store(_IDENTITY, _token())
        data = json.loads(cache.path.read_text())
        data["api_url"] = "https://api.github.com/"
        cache.path.write_text(json.dumps(data))
        assert cache.load(_IDENTITY) is not None


# ── Corrupt files ───────────────────────────────────────────────────────────


class TestCorruptCache:
    """A broken cache file is a cold cache, never an exception."""

    def _write(self, cache: TokenCache, content: str) -> None:
        cache.cache_dir.mkdir(parents=True, exist_ok=True)
        cache.path.write_text(content)

    def test_invalid_json(self, cache):
        self._write(cache, "{not json")
        assert cache.load(_IDENTITY) is None

    def test_truncated_document(self, cache):
        cache.store(_IDENTITY, _token())
        content = cache.path.read_text()
        cache.path.write_text(content[: len(content) // 2])
        assert cache.load(_IDENTITY) is None

    def test_missing_required_field(self, cache):
        cache.store(_IDENTITY, _token())
        data = json.loads(cache.path.read_text())
        del data["expires_at_ms"]
        cache.path.write_text(json.dumps(data))
        assert cache.load(_IDENTITY) is None

    def test_empty_token(self, cache):
        cache.store(_IDENTITY, _token())
        data = json.loads(cache.path.read_text())
        data["token"] = ""
        cache.path.write_text(json.dumps(data))
        assert cache.load(_IDENTITY) is None

    def test_expiry_beyond_representable_dates(self, cache):
        cache.store(_IDENTITY, _token())
        data = json.loads(cache.path.read_text())
        data["expires_at_ms"] = 10**17
        cache.path.write_text(json.dumps(data))
        assert cache.load(_IDENTITY) is None

    def test_expiry_at_last_representable_instant_still_loads(self, cache):
        cache.store(_IDENTITY, _token())
        data = json.loads(cache.path.read_text())
        data["expires_at_ms"] = 253_402_300_799_999
        cache.path.write_text(json.dumps(data))

        token = cache.load(_IDENTITY)

        assert token is not None
        assert token.expires_at_iso == "9999-12-31T23:59:59Z"

    def test_legacy_camel_case_layout(self, cache):
        self._write(
            cache,
            json.dumps({"token": "ghs_old", "expiresAt": int(time.time() * 1000) + 3_600_000}),
        )
        assert cache.load(_IDENTITY) is None

    def test_binary_garbage(self, cache):
        cache.cache_dir.mkdir(parents=True, exist_ok=True)
        cache.path.write_bytes(b"\xff\xfe\x00garbage")
        assert cache.load(_IDENTITY) is None

    def test_cache_path_is_directory(self, cache):
        cache.path.mkdir(parents=True)
        assert cache.load(_IDENTITY) is None


# ── Permissions ─────────────────────────────────────────────────────────────


class TestPermissions:
    def test_created_directory_is_owner_only(self, cache):
        cache.store(_IDENTITY, _token())
        assert _mode(cache.cache_dir) == 0o700

    def test_file_is_owner_read_write(self, cache):
        cache.store(_IDENTITY, _token())
        assert _mode(cache.path) == 0o600

    def test_loose_existing_file_is_tightened(self, cache):
        cache.cache_dir.mkdir(parents=True)
        cache.path.write_text("{}")
        os.chmod(cache.path, 0o644)

        cache.store(_IDENTITY, _token())

        assert _mode(cache.path) == 0o600

    def test_no_temp_files_left_behind(self, cache):
        cache.store(_IDENTITY, _token("a"))
        cache.store(_IDENTITY, _token("b"))
        assert [p.name for p in cache.cache_dir.iterdir()] == ["token.json"]


# ── Write failures ──────────────────────────────────────────────────────────


class TestStoreFailures:
    def test_unwritable_location_returns_false(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        cache = TokenCache(cache_dir=blocker / "creds")

        assert cache.store(_IDENTITY, _token()) is False

    def test_replace_failure_cleans_temp_file(self, cache):
        with patch("github_app_credential.cache.os.replace", side_effect=OSError("EXDEV")):
            assert cache.store(_IDENTITY, _token()) is False

        assert list(cache.cache_dir.iterdir()) == []
        assert cache.load(_IDENTITY) is None


# ── Concurrent writers ──────────────────────────────────────────────────────


class TestConcurrentWriters:
    def test_concurrent_stores_leave_one_complete_entry(self, cache):
        tokens = [f"ghs_writer_{i}" for i in range(8)]
        barrier = threading.Barrier(len(tokens))
        results: list[bool] = []

        def writer(value: str) -> None:
            barrier.wait()
            for _ in range(20):
                results.append(cache.store(_IDENTITY, _token(value)))

        threads = [threading.Thread(target=writer, args=(t,)) for t in tokens]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(results)
        data = json.loads(cache.path.read_text())
        assert data["token"] in tokens
        loaded = cache.load(_IDENTITY)
        assert loaded is not None
        assert loaded.token == data["token"]
        assert [p.name for p in cache.cache_dir.iterdir()] == ["token.json"]

    def test_reader_never_sees_partial_file(self, cache):
        cache.store(_IDENTITY, _token("ghs_initial"))
        stop = threading.Event()
        seen: list[str | None] = []

        def reader() -> None:
            while not stop.is_set():
                loaded = cache.load(_IDENTITY)
                seen.append(loaded.token if loaded else None)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(50):
                cache.store(_IDENTITY, _token(f"ghs_{i}"))
        finally:
            stop.set()
            thread.join()

        assert seen
        assert None not in seen


# ── clear ───────────────────────────────────────────────────────────────────


class TestClear:
    def test_clear_removes_file(self, cache):
        cache.store(_IDENTITY, _token())
        assert cache.clear() is True
        assert not cache.path.exists()

    def test_clear_missing_file(self, cache):
        assert cache.clear() is False

    def test_clear_only_matching_token(self, cache):
        cache.store(_IDENTITY, _token("ghs_current"))
        assert cache.clear(only_token="ghs_other") is False
        assert cache.path.exists()
        assert cache.clear(only_token="ghs_current") is True
        assert not cache.path.exists()
