from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from domain.errors import PermanentFetchError, TransientFetchError
from infrastructure.http.client import make_http_session
from shared.constants import (
    HTTP_5XX_MAX,
    HTTP_5XX_MIN,
    HTTP_FORBIDDEN,
    HTTP_GONE,
    HTTP_NOT_FOUND,
    HTTP_OK,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
    HTTP_USER_AGENT,
    TILE_CHECKSUM_HEADER,
    TILE_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

_PERMANENT_STATUSES = frozenset({HTTP_UNAUTHORIZED, HTTP_FORBIDDEN, HTTP_NOT_FOUND, HTTP_GONE})


@dataclass(frozen=True)
class FetchedTile:
    """Tile bytes plus the checksum announced by the source, if any."""

    data: bytes
    checksum: str | None = None


class TileSource(Protocol):
    """Opaque ``fetch(url) -> bytes`` capability.

    Implementations raise TransientFetchError for failures worth retrying and
    PermanentFetchError when the tile will never be served.
    """

    async def fetch(self, url: str) -> FetchedTile: ...


def redact_url(url: str) -> str:
    """URL without query string, so access tokens never reach the logs."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '', ''))


class HttpTileFetcher:
    """Fetches tiles over HTTP(S) with aiohttp.

    Usage:
        async with HttpTileFetcher() as fetcher:
            tile = await fetcher.fetch('https://tiles.example.org/3/4/2.png')
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout: float = TILE_TIMEOUT_SECONDS,
        user_agent: str = HTTP_USER_AGENT,
        verify_ssl: bool = True,
        concurrency: int | None = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._user_agent = user_agent
        self._verify_ssl = verify_ssl
        self._concurrency = concurrency
        self._stats = {'requests': 0, 'errors': 0, 'bytes': 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = make_http_session(
                concurrency=self._concurrency,
                user_agent=self._user_agent,
                verify_ssl=self._verify_ssl,
            )
        return self._session

    async def fetch(self, url: str) -> FetchedTile:
        """Download one tile.

        Raises:
            PermanentFetchError: 401/403/404/410.
            TransientFetchError: 429, 5xx, other statuses, connection errors
                and timeouts.
        """
        safe_url = redact_url(url)
        self._stats['requests'] += 1
        try:
            resp = await self._client().get(url, timeout=self._timeout)
            try:
                sc = resp.status
                if sc == HTTP_OK:
                    data = await resp.read()
                    self._stats['bytes'] += len(data)
                    checksum = resp.headers.get(TILE_CHECKSUM_HEADER)
                    return FetchedTile(
                        data=data,
                        checksum=checksum.strip().lower() if checksum else None,
                    )
                self._stats['errors'] += 1
                if sc in _PERMANENT_STATUSES:
                    msg = f'HTTP {sc} for tile {safe_url}'
                    raise PermanentFetchError(msg, status=sc)
                if sc == HTTP_TOO_MANY_REQUESTS or HTTP_5XX_MIN <= sc < HTTP_5XX_MAX:
                    msg = f'HTTP {sc} for tile {safe_url}'
                else:
                    msg = f'Unexpected HTTP {sc} for tile {safe_url}'
                raise TransientFetchError(msg, status=sc)
            finally:
                resp.release()
        except (TimeoutError, aiohttp.ClientError) as e:
            self._stats['errors'] += 1
            logger.debug('Tile request failed for %s: %s', safe_url, e)
            msg = f'Request failed for tile {safe_url}: {e.__class__.__name__}'
            raise TransientFetchError(msg) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpTileFetcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
