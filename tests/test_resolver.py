"""Tests for ref resolution."""

import pytest

from deployctl.core.exceptions import NotConfiguredError
from deployctl.core.utils import normalize_ref
from deployctl.deploy.resolver import EnvironmentResolver


class TestNormalizeRef:
    """Tests for normalize_ref."""

    @pytest.mark.parametrize(
        "ref,expected",
        [
            ("main", "main"),
            ("refs/heads/main", "main"),
            ("refs/heads/feature/login", "feature/login"),
            ("refs/tags/v1.0.0", "v1.0.0"),
            ("heads/develop", "develop"),
            ("  main\n", "main"),
        ],
    )
    def test_normalize(self, ref, expected):
        assert normalize_ref(ref) == expected


class TestEnvironmentResolver:
    """Tests for EnvironmentResolver."""

    def test_resolve_branch(self, resolver: EnvironmentResolver):
        assert resolver.resolve("main").name == "production"
        assert resolver.resolve("develop").name == "staging"

    def test_resolve_full_ref(self, resolver: EnvironmentResolver):
        assert resolver.resolve("refs/heads/main").name == "production"

    def test_unknown_ref(self, resolver: EnvironmentResolver):
        with pytest.raises(NotConfiguredError) as exc_info:
            resolver.resolve("refs/heads/feature/login")
        assert exc_info.value.ref == "feature/login"

    def test_no_prefix_matching(self, resolver: EnvironmentResolver):
        with pytest.raises(NotConfiguredError):
            resolver.resolve("main-hotfix")

    def test_mapping_keys_are_normalized(self, production):
        resolver = EnvironmentResolver({"refs/heads/main": "production"}, {"production": production})
        assert resolver.resolve("main") is production

    def test_get(self, resolver: EnvironmentResolver):
        assert resolver.get("staging").port == 8001
        with pytest.raises(NotConfiguredError):
            resolver.get("qa")

    def test_refs_for(self, resolver: EnvironmentResolver):
        assert resolver.refs_for("production") == ["main"]
        assert resolver.refs_for("qa") == []

    def test_from_config(self, sample_config):
        resolver = EnvironmentResolver.from_config(sample_config)
        assert {t.name for t in resolver.targets()} == {"production", "staging"}
        assert resolver.resolve("develop").path == "/srv/app-staging"
