#!/usr/bin/env python3
"""
GitHub App token — convenience CLI wrapper for the credential broker.

Calls github_app_credential.cli.main(), the same entry point installed as
github-app-token and git-credential-github-app.

Usage:
    python scripts/github_app_token.py --json
    # Or after pip install -e .:
    git config --global credential.helper github-app

Environment variables:
    GITHUB_APP_ID, GITHUB_APP_INSTALLATION_ID,
    GITHUB_APP_PRIVATE_KEY_PATH or GITHUB_APP_PRIVATE_KEY_BASE64
"""

from __future__ import annotations

import sys

from github_app_credential.cli import main

if __name__ == "__main__":
    sys.exit(main())
