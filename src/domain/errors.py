"""Exception hierarchy of the offline map cache.

Caller-input and conflict errors propagate to the caller of an operation.
Fetch errors are raised by the tile source and absorbed into tile/session
state by the download orchestrator.
"""

from __future__ import annotations


class OfflineMapError(Exception):
    """Base exception for the offline map cache."""

    code = 'OFFLINE_MAP_ERROR'

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {'error': True, 'code': self.code, 'message': self.message}


# --- Validation


class InvalidRequest(OfflineMapError):
    """Rejected caller input; never enters the download pipeline."""

    code = 'VALIDATION_ERROR'


class InvalidRegion(InvalidRequest):
    code = 'INVALID_REGION'


class AntimeridianUnsupported(InvalidRegion):
    code = 'ANTIMERIDIAN_UNSUPPORTED'


class InvalidZoomRange(InvalidRequest):
    code = 'INVALID_ZOOM_RANGE'


class UnknownMapType(InvalidRequest):
    code = 'UNKNOWN_MAP_TYPE'


class UnknownTileFormat(InvalidRequest):
    code = 'UNKNOWN_TILE_FORMAT'


class TooManyTiles(InvalidRequest):
    code = 'TOO_MANY_TILES'


# --- Lookup


class NotFoundError(OfflineMapError):
    code = 'NOT_FOUND'


class CacheNotFound(NotFoundError):
    code = 'CACHE_NOT_FOUND'


class TileNotFound(NotFoundError):
    code = 'TILE_NOT_FOUND'


class SessionNotFound(NotFoundError):
    code = 'SESSION_NOT_FOUND'


# --- Conflicts


class ConflictError(OfflineMapError):
    code = 'CONFLICT'


class Conflict(ConflictError):
    """Operation not allowed in the current download state."""


class Busy(ConflictError):
    """Cache has an active download session."""

    code = 'BUSY'


class AlreadyClaimed(ConflictError):
    """Tile claim lost to another worker (or no longer held)."""

    code = 'ALREADY_CLAIMED'


class InvalidTransition(ConflictError):
    code = 'INVALID_TRANSITION'

    def __init__(self, entity: str, current: object, target: object) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f'{entity}: transition {_name(current)} -> {_name(target)} is not allowed'
        )


def _name(status: object) -> str:
    return getattr(status, 'value', str(status))


# --- Resources


class StorageError(OfflineMapError):
    """Tile bytes could not be persisted (disk full, permissions, ...)."""

    code = 'STORAGE_ERROR'


# --- Tile source


class TileFetchError(OfflineMapError):
    code = 'FETCH_ERROR'

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class TransientFetchError(TileFetchError):
    """Network failure, timeout, rate limit or 5xx; worth retrying."""

    code = 'FETCH_TRANSIENT'


class PermanentFetchError(TileFetchError):
    """Source will never serve this tile (not found, forbidden)."""

    code = 'FETCH_PERMANENT'
