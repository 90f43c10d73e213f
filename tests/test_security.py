"""Tests for credential loading.

These tests verify that credentials are only ever read from mounted files,
that environment variables carrying secrets stop the provider from starting,
and that secret values never leak through repr or error messages.
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest

from capvcd.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    PASSWORD_FILE,
    REFRESH_TOKEN_FILE,
    USERNAME_FILE,
    CredentialsError,
    enforce_no_credentials_in_env,
    load_credentials,
)


class TestEnvironmentEnforcement:
    """Tests for the no-credentials-in-environment rule."""

    def test_clean_environment_passes(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            # Should not raise
            enforce_no_credentials_in_env()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Each forbidden variable blocks startup and is named in the error."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(CredentialsError) as exc_info:
                enforce_no_credentials_in_env()

            assert env_var in str(exc_info.value)
            assert "some-secret-value" not in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        with mock.patch.dict(os.environ, {"VCD_PASSWORD": ""}, clear=True):
            enforce_no_credentials_in_env()


class TestLoadCredentials:
    """Tests for reading credential files."""

    def test_refresh_token_preferred(self, tmp_path: Path) -> None:
        (tmp_path / REFRESH_TOKEN_FILE).write_text("token-123\n")
        (tmp_path / USERNAME_FILE).write_text("admin")
        (tmp_path / PASSWORD_FILE).write_text("hunter2")

        with mock.patch.dict(os.environ, {}, clear=True):
            credentials = load_credentials(tmp_path)

        assert credentials.uses_refresh_token
        assert credentials.refresh_token == "token-123"
        assert credentials.username is None

    def test_username_password_fallback(self, tmp_path: Path) -> None:
        (tmp_path / USERNAME_FILE).write_text("admin")
        (tmp_path / PASSWORD_FILE).write_text("hunter2")

        with mock.patch.dict(os.environ, {}, clear=True):
            credentials = load_credentials(tmp_path)

        assert not credentials.uses_refresh_token
        assert credentials.username == "admin"
        assert credentials.password == "hunter2"

    def test_username_without_password_rejected(self, tmp_path: Path) -> None:
        (tmp_path / USERNAME_FILE).write_text("admin")

        with mock.patch.dict(os.environ, {}, clear=True):
            with pytest.raises(CredentialsError) as exc_info:
                load_credentials(tmp_path)

        assert REFRESH_TOKEN_FILE in str(exc_info.value)

    def test_blank_token_file_ignored(self, tmp_path: Path) -> None:
        (tmp_path / REFRESH_TOKEN_FILE).write_text("   \n")

        with mock.patch.dict(os.environ, {}, clear=True):
            with pytest.raises(CredentialsError):
                load_credentials(tmp_path)

    def test_missing_directory(self, tmp_path: Path) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with pytest.raises(CredentialsError) as exc_info:
                load_credentials(tmp_path / "nope")

        assert "does not exist" in str(exc_info.value)

    def test_environment_checked_before_files(self, tmp_path: Path) -> None:
        (tmp_path / REFRESH_TOKEN_FILE).write_text("token-123")

        with mock.patch.dict(os.environ, {"VCD_REFRESH_TOKEN": "leaked"}, clear=True):
            with pytest.raises(CredentialsError) as exc_info:
                load_credentials(tmp_path)

        assert "VCD_REFRESH_TOKEN" in str(exc_info.value)

    def test_repr_hides_secrets(self, tmp_path: Path) -> None:
        (tmp_path / USERNAME_FILE).write_text("admin")
        (tmp_path / PASSWORD_FILE).write_text("hunter2")

        with mock.patch.dict(os.environ, {}, clear=True):
            credentials = load_credentials(tmp_path)

        assert "hunter2" not in repr(credentials)
        assert "admin" in repr(credentials)
