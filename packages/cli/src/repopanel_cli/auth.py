"""GitHub token lookup for repositories mounted with ``run --github``.

Sources, first hit wins:
  1. GITHUB_TOKEN, then GH_TOKEN (the variable the gh CLI itself reads)
  2. the token of the current ``gh auth login`` session

Public repositories are still readable without a token, at a lower rate limit.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")
GH_TIMEOUT_SECONDS = 5


def gh_cli_token() -> str | None:
    """Return the gh CLI session token, or None when gh is missing, slow or logged out."""
    try:
        result = subprocess.run(
            ["gh", "auth", "token"], capture_output=True, text=True, timeout=GH_TIMEOUT_SECONDS
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug("gh CLI unavailable: %s", e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def resolve_github_token(environ=None) -> str | None:
    """Return a GitHub token or None. Never raises."""
    environ = os.environ if environ is None else environ
    for name in TOKEN_ENV_VARS:
        token = (environ.get(name) or "").strip()
        if token:
            logger.debug("Using GitHub token from %s", name)
            return token

    token = gh_cli_token()
    if token is None:
        logger.info("No GitHub token found; reading mounted repositories anonymously.")
    return token
