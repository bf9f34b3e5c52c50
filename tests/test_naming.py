"""Tests for naming module.

Tests verify:
1. Slugs are 6 lowercase hex characters
2. Every sandbox name derives from the slug alone
3. Invalid slugs are rejected before any name is built
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import naming


class TestSlug:
    """Test slug generation and validation."""

    def test_generated_slug_is_six_hex_chars(self):
        """Generated slugs should match [a-f0-9]{6}."""
        for _ in range(20):
            slug = naming.generate_slug()
            assert len(slug) == 6
            assert naming.valid_slug(slug)

    @pytest.mark.parametrize('slug', ['ABCDEF', 'abc', 'abcdefg', 'ghijkl', '', None, 123456])
    def test_invalid_slugs(self, slug):
        """Should reject anything but six lowercase hex characters."""
        assert not naming.valid_slug(slug)
        with pytest.raises(ValueError):
            naming.validate_slug(slug)


class TestSandboxNames:
    """Test names derived from a slug."""

    def test_resource_name(self):
        assert naming.resource('a1b2c3') == 'stackrun-sandbox-a1b2c3'

    def test_container_name(self):
        assert naming.container('a1b2c3', 'tunnel') == 'stackrun-sandbox-a1b2c3-tunnel'

    def test_branch_name(self):
        assert naming.branch('a1b2c3') == 'stackrun-sandbox/a1b2c3'

    def test_hostname(self):
        assert naming.hostname('a1b2c3', 'example.dev') == 'stackrun-sandbox-a1b2c3.example.dev'

    def test_worker_names(self):
        """Worker script and route should both derive from the slug."""
        assert naming.worker('a1b2c3') == 'stackrun-sandbox-widget-a1b2c3'
        assert naming.worker_route('a1b2c3', 'example.dev') == 'stackrun-sandbox-a1b2c3.example.dev/*'

    def test_names_reject_bad_slug(self):
        """Should raise before building a name from an invalid slug."""
        with pytest.raises(ValueError):
            naming.resource('NOPE!!')

    def test_resource_regex_captures_slug(self):
        """Should recover the slug from any sandbox resource name."""
        match = naming.resource_regex().match('stackrun-sandbox-a1b2c3-tunnel')
        assert match is not None
        assert match.group(1) == 'a1b2c3'
        assert naming.resource_regex().match('other-a1b2c3') is None


class TestReleaseNames:
    """Test release prefix naming."""

    def test_release_prefix(self):
        assert naming.release_prefix('shop', 'staging') == 'shop-staging'

    def test_volume_name(self):
        assert naming.volume('shop-staging', 'postgres') == 'shop-staging-postgres'
