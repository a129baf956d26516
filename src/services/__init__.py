"""Services package - cache registry, downloads and statistics."""

from services.cache_registry import CacheRegistry
from services.download_orchestrator import DownloadOrchestrator
from services.offline_map_service import OfflineMapService
from services.statistics import StatisticsAggregator

__all__ = [
    'CacheRegistry',
    'DownloadOrchestrator',
    'OfflineMapService',
    'StatisticsAggregator',
]
