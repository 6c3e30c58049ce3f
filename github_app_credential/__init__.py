"""GitHub App installation-token broker for git and the gh CLI."""

__version__ = "0.1.0"
