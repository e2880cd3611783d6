"""Tests for the error hierarchy's exit codes and hints."""

from __future__ import annotations

from credvault import exceptions
from credvault.exceptions import VaultError


def _leaf_classes():
    return [
        cls
        for cls in vars(exceptions).values()
        if isinstance(cls, type) and issubclass(cls, VaultError) and cls is not VaultError
    ]


def test_every_error_has_a_non_generic_exit_code():
    for cls in _leaf_classes():
        assert cls.exit_code not in (0, 1, 2), cls.__name__


def test_top_level_kinds_have_distinct_exit_codes():
    top_level = [cls for cls in _leaf_classes() if cls.__bases__ == (VaultError,)]
    codes = [cls.exit_code for cls in top_level]
    assert len(codes) == len(set(codes))


def test_subtypes_inherit_their_kind():
    assert exceptions.EmptyProfileNameError().exit_code == 12
    assert exceptions.ProfileNameTooLongError().exit_code == 12
    assert exceptions.MalformedCredentialError("x").exit_code == 13


def test_refresh_failure_hint_names_profile():
    error = exceptions.RefreshFailedError("boom", profile_name="work")
    assert error.hint.endswith("credvault import oauth --profile work")


def test_invalid_reference_mentions_marker():
    error = exceptions.InvalidProfileReferenceError("typo", "/repo/.credvault-profile")
    assert "typo" in str(error)
    assert "/repo/.credvault-profile" in str(error)
