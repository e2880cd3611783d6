"""Tests for the high-level vault operations."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from keyring.errors import KeyringError

from credvault.bridge import RECORD_KEY
from credvault.exceptions import (
    InvalidCredentialFormatError,
    InvalidProfileNameError,
    NoProfileResolvedError,
    PreconditionFailedError,
    ProfileAlreadyExistsError,
    ProfileNotFoundError,
    RefreshFailedError,
    RegistryIoError,
    SecretBackendError,
)
from credvault.models import CredentialType
from credvault.secrets import SecretNamespace
from credvault.vault import Vault

API_KEY = "sk-ant-api03-" + "z" * 40
SLOT = ("Claude Code-credentials", "tester")


class TestProfileManagement:
    def test_add_api_key_profile(self, vault, keychain, clock):
        profile = vault.add_api_key_profile("work", API_KEY, "Work account")
        assert profile.credential_type is CredentialType.API_KEY
        assert profile.created_at == clock()
        assert keychain.entries[("credvault", "work")] == API_KEY
        assert [p.name for p in vault.list_profiles()] == ["work"]
        assert vault.get_profile("work").description == "Work account"

    def test_invalid_key_is_not_stored(self, vault, keychain):
        with pytest.raises(InvalidCredentialFormatError):
            vault.add_api_key_profile("work", "not-a-key")
        assert keychain.entries == {}
        assert vault.list_profiles() == []

    def test_invalid_name(self, vault, keychain):
        with pytest.raises(InvalidProfileNameError):
            vault.add_api_key_profile("has space", API_KEY)
        assert keychain.entries == {}

    def test_duplicate_leaves_existing_secret(self, vault, keychain):
        vault.add_api_key_profile("work", API_KEY)
        other = "sk-ant-api03-" + "q" * 40
        with pytest.raises(ProfileAlreadyExistsError):
            vault.add_api_key_profile("work", other)
        assert keychain.entries[("credvault", "work")] == API_KEY

    def test_failed_registry_save_removes_new_secrets(self, vault, keychain, monkeypatch):
        def _disk_full(registry):
            raise RegistryIoError("Cannot write registry: disk full")

        monkeypatch.setattr(vault.store, "save", _disk_full)
        with pytest.raises(RegistryIoError):
            vault.add_api_key_profile("work", API_KEY)
        with pytest.raises(RegistryIoError):
            vault.add_oauth_profile("sub", "access", refresh_token="refresh")
        assert keychain.entries == {}

    def test_failed_secret_write_leaves_no_partial_profile(
        self, vault, keychain, monkeypatch,
    ):
        real_set = keychain.set_password

        def _reject_refresh(service, username, password):
            if service == "credvault-oauth-refresh":
                raise KeyringError("keychain locked")
            real_set(service, username, password)

        monkeypatch.setattr(keychain, "set_password", _reject_refresh)
        with pytest.raises(SecretBackendError):
            vault.add_oauth_profile("sub", "access", refresh_token="refresh")
        assert keychain.entries == {}
        assert vault.list_profiles() == []

    def test_remove_deletes_secrets(self, vault, keychain):
        vault.add_api_key_profile("work", API_KEY)
        vault.add_oauth_profile("sub", "access", refresh_token="refresh")
        vault.set_default("sub")

        vault.remove_profile("sub")
        assert ("credvault-oauth", "sub") not in keychain.entries
        assert ("credvault-oauth-refresh", "sub") not in keychain.entries
        assert vault.default_profile() is None

        vault.remove_profile("work")
        assert keychain.entries == {}
        assert vault.list_profiles() == []

    def test_remove_tolerates_missing_secret(self, vault, keychain):
        vault.add_oauth_profile("sub", "access")
        vault.remove_profile("sub")
        assert vault.list_profiles() == []

    def test_remove_unknown(self, vault):
        with pytest.raises(ProfileNotFoundError):
            vault.remove_profile("ghost")

    def test_set_default_requires_profile(self, vault):
        with pytest.raises(ProfileNotFoundError):
            vault.set_default("ghost")
        vault.add_api_key_profile("work", API_KEY)
        vault.set_default("work")
        assert vault.default_profile() == "work"

    def test_state_survives_new_vault_instance(self, vault, vault_config, keychain, clock):
        vault.add_api_key_profile("work", API_KEY)
        vault.set_default("work")
        reopened = Vault(vault_config, keyring_backend=keychain, clock=clock)
        assert reopened.default_profile() == "work"
        assert reopened.credential_for("work")[1] == API_KEY


class TestResolution:
    def test_explicit_profile_wins(self, vault, tmp_path: Path):
        vault.add_api_key_profile("work", API_KEY)
        vault.add_api_key_profile("personal", API_KEY)
        project = tmp_path / "project"
        project.mkdir()
        vault.init_profile(project, "work")
        assert vault.resolve_profile("personal", project) == "personal"
        assert vault.resolve_profile(None, project) == "work"

    def test_explicit_unknown_profile(self, vault, tmp_path: Path):
        with pytest.raises(ProfileNotFoundError):
            vault.resolve_profile("ghost", tmp_path)

    def test_nothing_resolves(self, vault, tmp_path: Path):
        with pytest.raises(NoProfileResolvedError):
            vault.resolve_profile(None, tmp_path)

    def test_clear_cache(self, vault, tmp_path: Path):
        vault.add_api_key_profile("work", API_KEY)
        vault.init_profile(tmp_path, "work")
        assert vault.config.cache_path.exists()
        vault.clear_cache()
        assert not vault.config.cache_path.exists()
        assert vault.detect(tmp_path) == "work"


class TestCredentials:
    def test_credential_for_records_use(self, vault, clock):
        vault.add_api_key_profile("work", API_KEY)
        clock.advance(hours=1)
        profile, secret = vault.credential_for("work")
        assert secret == API_KEY
        assert profile.last_used == clock()
        assert vault.get_profile("work").last_used == clock()

    def test_environment_for(self, vault):
        vault.add_oauth_profile("sub", "oauth-access")
        assert vault.environment_for("sub") == {"ANTHROPIC_API_KEY": "oauth-access"}


class TestImportExternal:
    def _companion(self, keychain, **fields):
        record = {"accessToken": "acc", "refreshToken": "ref", **fields}
        keychain.entries[SLOT] = json.dumps({RECORD_KEY: record})

    def test_import(self, vault, keychain, clock):
        self._companion(
            keychain,
            expiresAt=int((clock() + timedelta(days=30)).timestamp() * 1000),
            subscriptionType="max",
        )
        profile = vault.import_external("default")

        assert profile.credential_type is CredentialType.OAUTH
        assert profile.description == (
            "Imported from Claude Code-credentials (max) on 2026-03-01"
        )
        assert profile.metadata == {"subscription_type": "max"}
        assert profile.expires_at == clock() + timedelta(days=30)
        assert vault.secrets.get(SecretNamespace.OAUTH_ACCESS, "default") == "acc"
        assert vault.secrets.get(SecretNamespace.OAUTH_REFRESH, "default") == "ref"
        # importing never changes the companion's own record
        assert json.loads(keychain.entries[SLOT])[RECORD_KEY]["accessToken"] == "acc"

    def test_empty_slot(self, vault):
        with pytest.raises(PreconditionFailedError, match="No credentials"):
            vault.import_external("default")
        assert vault.list_profiles() == []

    def test_malformed_slot(self, vault, keychain):
        keychain.entries[SLOT] = "{}"
        with pytest.raises(InvalidCredentialFormatError):
            vault.import_external("default")

    def test_existing_profile(self, vault, keychain):
        vault.add_api_key_profile("default", API_KEY)
        self._companion(keychain)
        with pytest.raises(ProfileAlreadyExistsError):
            vault.import_external("default")


class TestWithProfile:
    def test_runs_operation_and_records_use(self, vault, keychain, clock):
        vault.add_oauth_profile(
            "sub", "access", refresh_token="refresh",
            expires_at=clock() + timedelta(days=5),
        )
        clock.advance(minutes=10)
        result = vault.with_profile("sub", lambda: keychain.entries[SLOT])
        assert json.loads(result)[RECORD_KEY]["accessToken"] == "access"
        assert SLOT not in keychain.entries
        assert vault.get_profile("sub").last_used == clock()

    def test_expired_and_unrefreshable_fails_before_swap(
        self, vault_config, keychain, clock,
    ):
        def _reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        vault = Vault(
            vault_config,
            keyring_backend=keychain,
            transport=httpx.MockTransport(_reject),
            clock=clock,
        )
        vault.add_oauth_profile(
            "sub", "access", refresh_token="refresh",
            expires_at=clock() - timedelta(hours=1),
        )
        keychain.entries[SLOT] = "companion-original"
        calls = []

        with pytest.raises(RefreshFailedError):
            vault.with_profile("sub", lambda: calls.append("ran"))

        assert calls == []
        assert keychain.entries[SLOT] == "companion-original"

    def test_expired_token_is_refreshed_first(self, vault_config, keychain, clock):
        def _grant(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"access_token": "fresh", "expires_in": 3600},
            )

        vault = Vault(
            vault_config,
            keyring_backend=keychain,
            transport=httpx.MockTransport(_grant),
            clock=clock,
        )
        vault.add_oauth_profile(
            "sub", "stale", refresh_token="refresh",
            expires_at=clock() - timedelta(hours=1),
        )
        token = vault.with_profile(
            "sub", lambda: json.loads(keychain.entries[SLOT])[RECORD_KEY]["accessToken"],
        )
        assert token == "fresh"
