"""
Diagnostic utilities.

This module reports process memory and storage headroom while tiles are
being downloaded.
"""

import logging
from pathlib import Path
from typing import Any

import psutil

logger = logging.getLogger(__name__)


def get_memory_info() -> dict[str, Any]:
    """Get process and system memory usage information."""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        system_memory = psutil.virtual_memory()

        return {
            'process_rss_mb': round(memory_info.rss / 1024 / 1024, 2),
            'process_vms_mb': round(memory_info.vms / 1024 / 1024, 2),
            'system_total_mb': round(system_memory.total / 1024 / 1024, 2),
            'system_available_mb': round(
                system_memory.available / 1024 / 1024,
                2,
            ),
            'system_used_percent': system_memory.percent,
            'process_memory_percent': round(process.memory_percent(), 2),
        }
    except (psutil.Error, OSError) as e:
        return {'error': f'Failed to get memory info: {e}'}


def get_disk_info(path: str | Path) -> dict[str, Any]:
    """Get usage of the volume holding ``path`` (nearest existing parent)."""
    probe = Path(path).resolve()
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        usage = psutil.disk_usage(str(probe))
    except (psutil.Error, OSError) as e:
        return {'error': f'Failed to get disk info: {e}'}
    return {
        'path': str(probe),
        'total_mb': round(usage.total / 1024 / 1024, 2),
        'free_mb': round(usage.free / 1024 / 1024, 2),
        'used_percent': usage.percent,
    }


def has_free_space(path: str | Path, min_free_mb: float, needed_bytes: int = 0) -> bool:
    """True when the volume can take ``needed_bytes`` and still keep ``min_free_mb``.

    Unknown disk usage counts as enough space.
    """
    info = get_disk_info(path)
    if 'error' in info:
        logger.debug('Free space check skipped: %s', info['error'])
        return True
    needed_mb = needed_bytes / 1024 / 1024
    return info['free_mb'] - needed_mb >= min_free_mb


def log_memory_usage(context: str = '') -> None:
    """Quick memory usage logging."""
    memory_info = get_memory_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        context_label,
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
    )


def log_storage_usage(path: str | Path, context: str = '') -> None:
    """Quick storage headroom logging."""
    disk_info = get_disk_info(path)
    context_label = f' ({context})' if context else ''
    logger.info(
        'Storage%s: free=%sMB of %sMB (%s%% used)',
        context_label,
        disk_info.get('free_mb', 'N/A'),
        disk_info.get('total_mb', 'N/A'),
        disk_info.get('used_percent', 'N/A'),
    )
