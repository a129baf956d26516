"""Command-line entry point for the offline map cache."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from domain.errors import OfflineMapError
from domain.models import Cache
from domain.settings import OfflineCacheSettings, load_settings
from domain.states import SessionStatus
from services.offline_map_service import OfflineMapService
from shared.constants import LOG_FILENAME
from shared.diagnostics import log_memory_usage
from shared.progress import ConsoleProgress

logger = logging.getLogger(__name__)

# Seconds between progress bar refreshes
_PROGRESS_INTERVAL_S = 0.5


def setup_logging(settings: OfflineCacheSettings) -> Path:
    """Configure logging to stdout and the log directory.

    Returns:
        Path of the log file.
    """
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
    )
    return log_file


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _cache_line(cache: Cache) -> str:
    return (
        f'{cache.id:>5}  {cache.status.value:<11} {cache.priority.value:<10} '
        f'{cache.downloaded_tiles:>7}/{cache.total_tiles:<7} '
        f'{cache.download_progress * 100:6.1f}%  {cache.name}'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='offline-maps',
        description='Offline map tile caches for disaster regions',
    )
    parser.add_argument('--config', help='Sectioned TOML settings file')
    sub = parser.add_subparsers(dest='command', required=True)

    create = sub.add_parser('create', help='Create a cache for a bounding box')
    create.add_argument('name')
    create.add_argument(
        '--bbox',
        nargs=4,
        type=float,
        required=True,
        metavar=('MIN_LON', 'MIN_LAT', 'MAX_LON', 'MAX_LAT'),
    )
    create.add_argument('--zoom', type=int, nargs='+', required=True, dest='zoom_levels')
    create.add_argument('--url', required=True, help='Tile URL template with {z}/{x}/{y}')
    create.add_argument('--map-type', default=None)
    create.add_argument('--format', default=None, dest='tile_format')
    create.add_argument('--priority', default=None)
    create.add_argument('--region-id', type=int, default=None)
    create.add_argument('--region-name', default=None)
    create.add_argument('--ttl-days', type=float, default=None)
    create.add_argument('--start', action='store_true', help='Download right away')

    lst = sub.add_parser('list', help='List caches')
    lst.add_argument('--status', default=None)
    lst.add_argument('--region-id', type=int, default=None)
    lst.add_argument('--all', action='store_true', help='Include deleted caches')

    download = sub.add_parser('download', help='Start or resume a download and wait')
    download.add_argument('cache_id', type=int)
    download.add_argument('--concurrency', type=int, default=None)

    stats = sub.add_parser('stats', help='Show statistics')
    stats.add_argument('--cache-id', type=int, default=None)
    stats.add_argument('--since', type=_parse_time, default=None)
    stats.add_argument('--until', type=_parse_time, default=None)
    stats.add_argument('--by-region', action='store_true')

    cleanup = sub.add_parser('cleanup', help='Expire and purge overdue caches')
    cleanup.add_argument('--now', type=_parse_time, default=None)

    verify = sub.add_parser('verify', help='Re-hash stored tiles of a cache')
    verify.add_argument('cache_id', type=int)

    delete = sub.add_parser('delete', help='Delete a cache and its tiles')
    delete.add_argument('cache_id', type=int)
    return parser


async def _download(service: OfflineMapService, cache_id: int, concurrency: int | None) -> int:
    latest = service.latest_session(cache_id)
    if latest is not None and latest.status == SessionStatus.PAUSED:
        session = await service.resume_download(cache_id)
    else:
        config = None
        if concurrency is not None:
            config = service.settings.download_config().model_copy(
                update={'concurrency': concurrency}
            )
        session = await service.start_download(cache_id, config)

    progress = ConsoleProgress(session.total_tiles, label=f'Cache {cache_id}')
    try:
        while service.orchestrator.is_running(cache_id):
            await asyncio.sleep(_PROGRESS_INTERVAL_S)
            current = service.latest_session(cache_id)
            if current is None:
                break
            eta = None
            if current.estimated_completion_time is not None:
                eta = (current.estimated_completion_time - datetime.now(UTC)).total_seconds()
            progress.render(
                current.downloaded_tiles,
                failed=current.failed_tiles,
                bytes_per_second=current.download_speed_bytes_per_sec,
                eta_seconds=max(0.0, eta) if eta is not None else None,
            )
    except asyncio.CancelledError:
        await service.pause_download(cache_id)
        raise
    finally:
        progress.close()

    final = await service.wait(cache_id)
    if final is None:
        return 1
    print(
        f'Session {final.download_id}: {final.status.value}, '
        f'{final.downloaded_tiles}/{final.total_tiles} tiles'
        + (f' ({final.error_message})' if final.error_message else '')
    )
    return 0 if final.status == SessionStatus.COMPLETED else 1


async def run(args: argparse.Namespace, settings: OfflineCacheSettings) -> int:
    async with OfflineMapService.from_settings(settings) as service:
        if args.command == 'create':
            request = {
                'name': args.name,
                'bounds': [(args.bbox[0], args.bbox[1]), (args.bbox[2], args.bbox[3])],
                'zoom_levels': args.zoom_levels,
                'tile_source_url': args.url,
                'region_id': args.region_id,
                'region_name': args.region_name,
                'ttl_days': args.ttl_days,
            }
            for key in ('map_type', 'tile_format', 'priority'):
                value = getattr(args, key)
                if value is not None:
                    request[key] = value
            cache = await service.create_cache(request, auto_start=False)
            print(f'Created cache {cache.id}: {cache.total_tiles} tiles')
            if args.start:
                return await _download(service, cache.id, None)
            return 0

        if args.command == 'list':
            criteria = {'include_deleted': args.all}
            if args.status:
                criteria['status'] = args.status.upper()
            if args.region_id is not None:
                criteria['region_id'] = args.region_id
            for cache in service.list_caches(**criteria):
                print(_cache_line(cache))
            return 0

        if args.command == 'download':
            return await _download(service, args.cache_id, args.concurrency)

        if args.command == 'stats':
            if args.cache_id is not None:
                result = service.cache_statistics(args.cache_id).model_dump(mode='json')
            elif args.by_region:
                result = [
                    r.model_dump(mode='json')
                    for r in service.regional_statistics(args.since, args.until)
                ]
            else:
                result = service.global_statistics(args.since, args.until).model_dump(
                    mode='json'
                )
            print(json.dumps(result, indent=2, ensure_ascii=False))
            return 0

        if args.command == 'cleanup':
            expired = await service.cleanup_expired(args.now)
            print(f'Expired caches: {expired or "none"}')
            return 0

        if args.command == 'verify':
            corrupted = service.verify_cache(args.cache_id)
            print(f'Corrupted tiles: {corrupted}')
            return 0 if corrupted == 0 else 1

        if args.command == 'delete':
            cache = service.delete_cache(args.cache_id)
            print(f'Cache {cache.id} deleted')
            return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f'Invalid configuration: {e}', file=sys.stderr)
        return 2
    log_file = setup_logging(settings)
    logger.info('Offline map cache: %s (log: %s)', args.command, log_file)
    log_memory_usage('startup')

    try:
        return asyncio.run(run(args, settings))
    except OfflineMapError as e:
        logger.error('%s failed: %s', args.command, e)
        print(f'Error [{e.code}]: {e}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info('Interrupted by user')
        return 130


if __name__ == '__main__':
    sys.exit(main())
