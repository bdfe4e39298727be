"""Tests for agents.environment.naming: branch name to environment id."""

import hashlib

import pytest

from agents.environment.naming import resolve
from framework.errors import InvalidNameError


class TestResolve:
    """Sanitization, determinism and length limits."""

    def test_feature_branch(self):
        assert resolve("feature/user-auth") == "feature-user-auth"

    def test_deterministic_across_calls(self):
        names = ["feature/user-auth", "Release/2024.10", "x" * 200, "fix/ünïcode"]
        for name in names:
            assert resolve(name) == resolve(name)

    def test_collapses_runs_and_lowercases(self):
        assert resolve("Feature__Foo--Bar") == "feature-foo-bar"
        assert resolve("release/2024.10_rc1") == "release-2024-10-rc1"

    def test_strips_leading_and_trailing_separators(self):
        assert resolve("--hotfix//") == "hotfix"

    def test_non_ascii_is_replaced(self):
        assert resolve("fix/ünïcode") == "fix-n-code"

    @pytest.mark.parametrize("name", ["", "///", "__--__", "ü"])
    def test_unusable_names_raise(self, name):
        with pytest.raises(InvalidNameError):
            resolve(name)

    def test_invalid_name_is_a_value_error(self):
        with pytest.raises(ValueError):
            resolve("")

    def test_exact_limit_is_not_hashed(self):
        name = "a" * 63
        assert resolve(name) == name

    def test_long_name_truncated_with_hash_suffix(self):
        name = "feature/" + "a" * 100
        digest = hashlib.sha256(name.encode()).hexdigest()[:8]
        result = resolve(name)
        assert len(result) == 63
        assert result == ("feature-" + "a" * 46) + "-" + digest

    def test_long_names_sharing_prefix_stay_distinct(self):
        prefix = "feature/" + "b" * 80
        assert resolve(prefix + "/one") != resolve(prefix + "/two")

    def test_truncation_does_not_leave_double_separator(self):
        name = "a" * 53 + "/" + "b" * 20
        result = resolve(name)
        assert "--" not in result
        assert result.startswith("a" * 53 + "-")
        assert len(result) == 53 + 1 + 8

    def test_custom_max_length(self):
        result = resolve("feature/some-very-long-branch-name", max_length=20)
        assert len(result) <= 20
        assert result.startswith("feature-som")

    def test_max_length_too_small_rejected(self):
        with pytest.raises(ValueError):
            resolve("feature/x", max_length=9)
