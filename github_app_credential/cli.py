"""
GitHub App credential helper — prints installation tokens for git and gh.

Usage:
    github-app-token --app-id 123456 --installation-id 98765 --private-key-path ./key.pem
    github-app-token --base64-key "$(base64 -w0 < key.pem)" --json

    # Fallback mode for shell wrappers: prints nothing when the App
    # environment is not configured, so the caller keeps its own token.
    GH_TOKEN=$(git-credential-github-app --token 2>/dev/null)

    # git credential helper
    git config --global credential.helper github-app

Environment variables:
    GITHUB_APP_ID, GITHUB_APP_INSTALLATION_ID,
    GITHUB_APP_PRIVATE_KEY_PATH or GITHUB_APP_PRIVATE_KEY_BASE64,
    GITHUB_API_URL, GITHUB_APP_CREDENTIAL_CACHE_DIR, GITHUB_APP_HTTP_TIMEOUT,
    LOG_LEVEL (default: warning), LOG_PRETTY

Exit codes:
    0 — token printed, or nothing to do (not configured / other host)
    1 — key, network or GitHub error (message on stderr)
    2 — explicit invocation without the required configuration
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Iterable
from typing import TextIO
from urllib.parse import urlsplit

import structlog

from github_app_credential import __version__
from github_app_credential.broker import TokenBroker
from github_app_credential.cache import TokenCache
from github_app_credential.config import ENV_API_URL, resolve_identity
from github_app_credential.errors import BrokerError, ConfigurationError
from github_app_credential.models import DEFAULT_API_URL, InstallationToken

logger = structlog.get_logger()

# git only needs a non-empty username; GitHub ignores it for installation tokens.
CREDENTIAL_USERNAME = "x-access-token"


# ── Structured logging ─────────────────────────────────────────────────────────
def configure_logging() -> None:
    """Configure structlog on stderr. stdout is reserved for credentials."""
    log_level = os.getenv("LOG_LEVEL", "warning").upper()
    log_pretty = os.getenv("LOG_PRETTY", "false").lower() == "true"

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if log_pretty
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


# ── git credential protocol ────────────────────────────────────────────────────
def credential_host(api_url: str) -> str:
    """Map an API base URL to the git host it issues credentials for.

    https://api.github.com          -> github.com
    https://api.acme.ghe.com        -> acme.ghe.com
    https://ghe.example.com/api/v3  -> ghe.example.com
    """
    netloc = urlsplit(api_url).netloc.lower()
    if netloc.startswith("api."):
        return netloc[len("api."):]
    return netloc


def parse_credential_request(lines: Iterable[str]) -> dict[str, str]:
    """Parse git's key=value request, stopping at the first blank line."""
    request: dict[str, str] = {}
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            break
        key, sep, value = line.partition("=")
        if sep:
            request[key] = value
    return request


def format_credential(host: str, token: InstallationToken) -> str:
    """Render a token as a git credential response."""
    return (
        "protocol=https\n"
        f"host={host}\n"
        f"username={CREDENTIAL_USERNAME}\n"
        f"password={token.token}\n"
        f"password_expiry_utc={int(token.expires_at)}\n"
    )


def _request_matches(request: dict[str, str], host: str) -> bool:
    protocol = request.get("protocol", "https")
    return protocol == "https" and request.get("host", "").lower() == host


# ── Argument parsing ───────────────────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="github-app-token",
        description="Generate (and cache) GitHub App installation access tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "operation",
        nargs="?",
        choices=["get", "store", "erase"],
        help="git credential helper operation (reads the request from stdin)",
    )
    parser.add_argument("--app-id", help="GitHub App ID (env: GITHUB_APP_ID)")
    parser.add_argument(
        "--installation-id",
        help="Installation ID (env: GITHUB_APP_INSTALLATION_ID)",
    )
    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument(
        "--private-key-path",
        help="Path to the PEM private key (env: GITHUB_APP_PRIVATE_KEY_PATH)",
    )
    key_group.add_argument(
        "--base64-key",
        help="Base64-encoded PEM private key (env: GITHUB_APP_PRIVATE_KEY_BASE64)",
    )
    parser.add_argument(
        "--api-url",
        help=f"GitHub API base URL (env: GITHUB_API_URL, default: {DEFAULT_API_URL})",
    )
    parser.add_argument(
        "--cache-dir",
        help="Token cache directory (env: GITHUB_APP_CREDENTIAL_CACHE_DIR)",
    )
    parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Ignore the cache and mint a new token",
    )
    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "--json",
        action="store_true",
        help="Print token, expiry, permissions and repositories as JSON",
    )
    output.add_argument(
        "--token",
        action="store_true",
        help="Fallback mode: print the bare token, or nothing if not configured",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _identity_values(args: argparse.Namespace) -> dict[str, str | None]:
    return {
        "app_id": args.app_id,
        "installation_id": args.installation_id,
        "private_key_path": args.private_key_path,
        "base64_key": args.base64_key,
        "api_url": args.api_url,
    }


def _run_credential_operation(
    args: argparse.Namespace, broker: TokenBroker, stdin: TextIO, stdout: TextIO
) -> int:
    request = parse_credential_request(stdin)
    api_url = args.api_url or os.getenv(ENV_API_URL) or DEFAULT_API_URL
    host = credential_host(api_url)

    if not _request_matches(request, host):
        logger.debug(
            "credential.other_host",
            operation=args.operation,
            host=request.get("host", ""),
            protocol=request.get("protocol", ""),
        )
        return 0

    if args.operation == "store":
        # Tokens are already cached by get; nothing to persist from git.
        return 0

    if args.operation == "erase":
        # git rejected the password: drop it so the next get mints a fresh one.
        password = request.get("password")
        broker.invalidate(token=password or None)
        return 0

    token = broker.get_token_if_configured(
        force_refresh=args.force_refresh, **_identity_values(args)
    )
    if token is not None:
        stdout.write(format_credential(host, token))
    return 0


def main(
    argv: list[str] | None = None,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout
    broker = TokenBroker(cache=TokenCache(cache_dir=args.cache_dir))

    try:
        if args.operation:
            return _run_credential_operation(args, broker, stdin, stdout)

        if args.token:
            token = broker.get_token_if_configured(
                force_refresh=args.force_refresh, **_identity_values(args)
            )
            if token is not None:
                stdout.write(token.token + "\n")
            return 0

        try:
            config = resolve_identity(**_identity_values(args))
        except ConfigurationError as exc:
            parser.error(str(exc))

        token = broker.get_token(config, force_refresh=args.force_refresh)
        if args.json:
            stdout.write(json.dumps(token.to_dict(), indent=2) + "\n")
        else:
            stdout.write(token.token + "\n")
        return 0
    except BrokerError as exc:
        logger.debug("credential.failed", error_type=type(exc).__name__)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
