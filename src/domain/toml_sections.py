"""Mapping layer between flat OfflineCacheSettings fields and sectioned TOML.

OfflineCacheSettings remains a flat Pydantic model. This module provides two
functions:
- flat_to_sectioned(): flat dict → sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict → flat dict (for TOML load)
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'storage': {
        'storage_path': 'path',
        'database_path': 'database',
        'log_dir': 'log_dir',
        'min_free_space_mb': 'min_free_space_mb',
    },
    'download': {
        'concurrency': 'concurrency',
        'max_retries': 'max_retries',
        'tile_timeout_seconds': 'tile_timeout_seconds',
        'retry_base_delay_seconds': 'retry_base_delay_seconds',
        'retry_max_delay_seconds': 'retry_max_delay_seconds',
        'throughput_smoothing': 'throughput_smoothing',
        'max_tiles_per_cache': 'max_tiles_per_cache',
    },
    'http': {
        'user_agent': 'user_agent',
        'verify_ssl': 'verify_ssl',
    },
    'expiry': {
        'default_ttl_days': 'default_ttl_days',
    },
    'diagnostics': {
        'log_memory_every_tiles': 'log_memory_every_tiles',
        'log_level': 'log_level',
    },
}

# Reverse index: flat_field → (section, short_name)
_FLAT_TO_SECTION: dict[str, tuple[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    for _flat, _short in _fields.items():
        _FLAT_TO_SECTION[_flat] = (_section, _short)

# Reverse index: (section, short_name) → flat_field
_SECTION_TO_FLAT: dict[str, dict[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    _SECTION_TO_FLAT[_section] = {v: k for k, v in _fields.items()}


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat settings dict to sectioned dict for TOML output.

    ``None`` values are skipped: TOML has no null.
    """
    result: dict = {}
    for key, value in flat.items():
        if value is None:
            continue
        if key in _FLAT_TO_SECTION:
            section, short_name = _FLAT_TO_SECTION[key]
        else:
            section, short_name = 'common', key
        result.setdefault(section, {})[short_name] = value
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for settings validation."""
    flat: dict = {}
    for key, value in data.items():
        if isinstance(value, dict) and key in _SECTION_TO_FLAT:
            # Known section: expand short names to flat names
            mapping = _SECTION_TO_FLAT[key]
            for short_name, field_value in value.items():
                flat_name = mapping.get(short_name, short_name)
                flat[flat_name] = field_value
        elif isinstance(value, dict):
            # Common or unknown section: pass through keys as-is
            flat.update(value)
        else:
            # Top-level key (flat TOML)
            flat[key] = value
    return flat
