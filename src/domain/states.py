"""Closed status enums with their allowed transitions.

Every status change goes through :func:`ensure_transition`; the tables below
are the only place where the lifecycles are defined.
"""

from __future__ import annotations

from enum import Enum

from domain.errors import InvalidTransition


class CacheStatus(str, Enum):
    PENDING = 'PENDING'
    DOWNLOADING = 'DOWNLOADING'
    PAUSED = 'PAUSED'
    UPDATING = 'UPDATING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CORRUPTED = 'CORRUPTED'
    EXPIRED = 'EXPIRED'
    DELETED = 'DELETED'

    def can_transition_to(self, target: CacheStatus) -> bool:
        return target in _CACHE_TRANSITIONS[self]


class TileStatus(str, Enum):
    PENDING = 'PENDING'
    DOWNLOADING = 'DOWNLOADING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CORRUPTED = 'CORRUPTED'
    EXPIRED = 'EXPIRED'
    DELETED = 'DELETED'

    def can_transition_to(self, target: TileStatus) -> bool:
        return target in _TILE_TRANSITIONS[self]


class SessionStatus(str, Enum):
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    RETRYING = 'RETRYING'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'

    @property
    def is_active(self) -> bool:
        """PENDING/RUNNING session; RETRYING counts as RUNNING."""
        return self in ACTIVE_SESSION_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        )

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in _SESSION_TRANSITIONS[self]


ACTIVE_SESSION_STATUSES = frozenset(
    {SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.RETRYING}
)

# Tiles a worker may still claim (subject to the attempt budget for retries)
RETRYABLE_TILE_STATUSES = frozenset({TileStatus.FAILED, TileStatus.CORRUPTED})

_CACHE_TRANSITIONS: dict[CacheStatus, frozenset[CacheStatus]] = {
    CacheStatus.PENDING: frozenset(
        {CacheStatus.DOWNLOADING, CacheStatus.EXPIRED, CacheStatus.DELETED}
    ),
    CacheStatus.DOWNLOADING: frozenset(
        {
            CacheStatus.PAUSED,
            CacheStatus.UPDATING,
            CacheStatus.FAILED,
            CacheStatus.EXPIRED,
            CacheStatus.DELETED,
        }
    ),
    CacheStatus.PAUSED: frozenset(
        {
            CacheStatus.DOWNLOADING,
            CacheStatus.FAILED,
            CacheStatus.EXPIRED,
            CacheStatus.DELETED,
        }
    ),
    # Transient while aggregates are recomputed at the end of a session
    CacheStatus.UPDATING: frozenset(
        {
            CacheStatus.COMPLETED,
            CacheStatus.FAILED,
            CacheStatus.CORRUPTED,
            CacheStatus.EXPIRED,
            CacheStatus.DELETED,
        }
    ),
    CacheStatus.COMPLETED: frozenset(
        {CacheStatus.CORRUPTED, CacheStatus.EXPIRED, CacheStatus.DELETED}
    ),
    CacheStatus.FAILED: frozenset(
        {CacheStatus.DOWNLOADING, CacheStatus.EXPIRED, CacheStatus.DELETED}
    ),
    CacheStatus.CORRUPTED: frozenset(
        {CacheStatus.DOWNLOADING, CacheStatus.EXPIRED, CacheStatus.DELETED}
    ),
    CacheStatus.EXPIRED: frozenset({CacheStatus.DELETED}),
    CacheStatus.DELETED: frozenset(),
}

_TILE_TRANSITIONS: dict[TileStatus, frozenset[TileStatus]] = {
    TileStatus.PENDING: frozenset(
        {TileStatus.DOWNLOADING, TileStatus.EXPIRED, TileStatus.DELETED}
    ),
    # PENDING/FAILED/CORRUPTED again when a claim is released by pause or cancel
    TileStatus.DOWNLOADING: frozenset(
        {
            TileStatus.PENDING,
            TileStatus.COMPLETED,
            TileStatus.FAILED,
            TileStatus.CORRUPTED,
            TileStatus.EXPIRED,
            TileStatus.DELETED,
        }
    ),
    # CORRUPTED when an integrity check finds the stored file damaged
    TileStatus.COMPLETED: frozenset(
        {TileStatus.CORRUPTED, TileStatus.EXPIRED, TileStatus.DELETED}
    ),
    TileStatus.FAILED: frozenset(
        {TileStatus.DOWNLOADING, TileStatus.EXPIRED, TileStatus.DELETED}
    ),
    TileStatus.CORRUPTED: frozenset(
        {TileStatus.DOWNLOADING, TileStatus.EXPIRED, TileStatus.DELETED}
    ),
    TileStatus.EXPIRED: frozenset({TileStatus.DELETED}),
    TileStatus.DELETED: frozenset(),
}

_SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {
            SessionStatus.RUNNING,
            SessionStatus.PAUSED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.RETRYING,
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.RETRYING: frozenset(
        {
            SessionStatus.RUNNING,
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def ensure_transition(entity: str, current: Enum, target: Enum) -> None:
    """Raise InvalidTransition unless ``current`` may move to ``target``.

    Args:
        entity: Human readable subject for the error message (``cache 12``).
        current: Current status.
        target: Requested status.
    """
    if not current.can_transition_to(target):  # type: ignore[attr-defined]
        raise InvalidTransition(entity, current, target)
