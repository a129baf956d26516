"""Shared utilities and helpers."""
from shared.diagnostics import has_free_space, log_memory_usage, log_storage_usage
from shared.progress import ConsoleProgress, ThroughputMeter

__all__ = [
    'ConsoleProgress',
    'ThroughputMeter',
    'has_free_space',
    'log_memory_usage',
    'log_storage_usage',
]
