"""
gh wrapper — injects a GitHub App installation token as GH_TOKEN, then execs gh.

Install by moving the real binary aside and pointing ``gh`` at this entry point:

    mv /usr/bin/gh /usr/bin/gh-real
    ln -s "$(command -v gh-app-wrapper)" /usr/bin/gh

If the GitHub App environment is not configured, gh runs unchanged and keeps
using whatever GH_TOKEN / GITHUB_TOKEN / hosts.yml it already had.

Environment variables:
    GH_REAL_PATH — the wrapped gh binary (default: /usr/bin/gh-real)
"""

from __future__ import annotations

import os
import sys

import structlog

from github_app_credential.broker import TokenBroker
from github_app_credential.cli import configure_logging
from github_app_credential.config import is_configured
from github_app_credential.errors import BrokerError

logger = structlog.get_logger()

DEFAULT_GH_REAL_PATH = "/usr/bin/gh-real"


def _get_env(key: str, default: str = "") -> str:
    """Read env var at call time."""
    return os.getenv(key, default)


def build_gh_env(broker: TokenBroker | None = None) -> dict[str, str]:
    """Return the environment for gh, with GH_TOKEN set when the App is configured.

    Raises:
        BrokerError: The App is configured but no token could be obtained.
    """
    env = dict(os.environ)
    token = None
    if is_configured():
        token = (broker or TokenBroker()).get_token_if_configured()
    if token is None:
        logger.debug("gh_wrapper.passthrough")
        return env
    env["GH_TOKEN"] = token.token
    return env


def main(argv: list[str] | None = None) -> int:
    """Entry point. Only returns on failure; success replaces the process."""
    configure_logging()
    args = list(sys.argv[1:] if argv is None else argv)
    real_gh = _get_env("GH_REAL_PATH", DEFAULT_GH_REAL_PATH)

    try:
        env = build_gh_env()
    except BrokerError as exc:
        print(f"Error: failed to get GitHub App token: {exc}", file=sys.stderr)
        return 1

    try:
        os.execvpe(real_gh, [real_gh, *args], env)
    except OSError as exc:
        print(f"Error: cannot execute {real_gh}: {exc}", file=sys.stderr)
        return 127
    return 0


if __name__ == "__main__":
    sys.exit(main())
