"""Credential loading for the Cloud Director API.

Credentials are mounted as files (one value per file, the usual layout of a
projected Kubernetes Secret) and never read from environment variables:

    <credentials dir>/refreshToken           API token (preferred)
    <credentials dir>/username + password    session login fallback

SECURITY INVARIANTS:
1. VCD_PASSWORD / VCD_REFRESH_TOKEN must never be present in the environment
2. Secret values never appear in logs or exception messages
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

REFRESH_TOKEN_FILE = "refreshToken"
USERNAME_FILE = "username"
PASSWORD_FILE = "password"

# Environment variables that would leak secrets into process listings
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "VCD_PASSWORD",
    "VCD_REFRESH_TOKEN",
    "VCD_API_TOKEN",
)

CREDENTIALS_IN_ENV_MESSAGE = (
    "Credential detected in environment variable {env_var}. "
    "Mount credentials as files under the credentials directory instead "
    "(refreshToken, or username and password)."
)


class CredentialsError(Exception):
    """Raised when credentials are missing, malformed or supplied insecurely.

    This is a fatal error that prevents operator startup.
    """

    pass


@dataclass(frozen=True)
class Credentials:
    """Cloud Director credentials. repr never shows secret values."""

    refresh_token: str | None = field(default=None, repr=False)
    username: str | None = None
    password: str | None = field(default=None, repr=False)

    @property
    def uses_refresh_token(self) -> bool:
        return self.refresh_token is not None


def enforce_no_credentials_in_env() -> None:
    """Refuse to start if a credential is passed through the environment.

    Raises:
        CredentialsError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential found in environment",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise CredentialsError(CREDENTIALS_IN_ENV_MESSAGE.format(env_var=env_var))


def _read_secret_file(path: Path) -> str | None:
    if not path.is_file():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


def load_credentials(credentials_dir: Path) -> Credentials:
    """Load credentials from files after checking the environment is clean.

    Raises:
        CredentialsError: If no usable credential set is found.
    """
    enforce_no_credentials_in_env()

    if not credentials_dir.is_dir():
        raise CredentialsError(f"Credentials directory does not exist: {credentials_dir}")

    refresh_token = _read_secret_file(credentials_dir / REFRESH_TOKEN_FILE)
    if refresh_token:
        logger.info("Using API refresh token", extra={"credentials_dir": str(credentials_dir)})
        return Credentials(refresh_token=refresh_token)

    username = _read_secret_file(credentials_dir / USERNAME_FILE)
    password = _read_secret_file(credentials_dir / PASSWORD_FILE)
    if username and password:
        logger.info(
            "Using username/password session login",
            extra={"credentials_dir": str(credentials_dir), "username": username},
        )
        return Credentials(username=username, password=password)

    raise CredentialsError(
        f"No credentials in {credentials_dir}: expected {REFRESH_TOKEN_FILE}, "
        f"or {USERNAME_FILE} and {PASSWORD_FILE}"
    )
