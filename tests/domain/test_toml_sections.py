"""Tests for TOML sectioned settings mapping layer."""

import tomlkit

from domain.settings import OfflineCacheSettings
from domain.toml_sections import (
    SECTION_MAP,
    flat_to_sectioned,
    sectioned_to_flat,
)


class TestFlatToSectioned:
    """Tests for flat_to_sectioned()."""

    def test_creates_expected_sections(self):
        """Flat settings should be split into sections."""
        result = flat_to_sectioned(OfflineCacheSettings().model_dump())
        assert set(result) == {'storage', 'download', 'http', 'diagnostics'}

    def test_short_names(self):
        """Section keys should drop their prefixes."""
        result = flat_to_sectioned({'storage_path': '/data', 'concurrency': 8})
        assert result == {'storage': {'path': '/data'}, 'download': {'concurrency': 8}}

    def test_none_skipped(self):
        """None values should be left out."""
        assert flat_to_sectioned({'default_ttl_days': None}) == {}

    def test_unknown_goes_to_common(self):
        """Unknown keys should go to the common section."""
        assert flat_to_sectioned({'custom': 1}) == {'common': {'custom': 1}}

    def test_every_setting_mapped(self):
        """Every settings field should have a section."""
        mapped = {name for fields in SECTION_MAP.values() for name in fields}
        assert mapped == set(OfflineCacheSettings.model_fields)


class TestSectionedToFlat:
    """Tests for sectioned_to_flat()."""

    def test_round_trip(self):
        """Flattening should undo sectioning."""
        settings = OfflineCacheSettings(concurrency=9, default_ttl_days=14, verify_ssl=False)
        text = tomlkit.dumps(flat_to_sectioned(settings.model_dump()))
        flat = sectioned_to_flat(tomlkit.parse(text).unwrap())
        assert OfflineCacheSettings.model_validate(flat) == settings

    def test_flat_toml_accepted(self):
        """A flat TOML document should be accepted."""
        assert sectioned_to_flat({'max_retries': 5}) == {'max_retries': 5}

    def test_unknown_section_passed_through(self):
        """Unknown sections should pass through."""
        assert sectioned_to_flat({'extra': {'foo': 1}}) == {'foo': 1}
