"""
Hybrid pagination.

The first total count observed for a (session, procedure) pair decides the
mode once:

    count <  threshold  -> ALL_LOADED  (whole result set in one response;
                                        sort/filter/page then happen client-side)
    count >= threshold  -> WINDOWED    (one bounded page per round trip)

The decision is sticky for the life of the session entry, even when a later
filter shrinks the result below the threshold. In WINDOWED mode a change of
sort or filter state sends the caller back to page 1.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from cachetools import TTLCache

from grid_api.config import PAGINATION_THRESHOLD, SESSION_CACHE_SIZE, SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)


class PaginationMode(str, Enum):
    UNKNOWN = "Unknown"
    ALL_LOADED = "AllLoaded"
    WINDOWED = "Windowed"


@dataclass(frozen=True)
class Window:
    offset: int
    limit: Optional[int]  # None: no bound, the entire result set


@dataclass
class _SessionState:
    mode: PaginationMode
    query_signature: Optional[str] = None


def choose_mode(total_count: int, threshold: int = PAGINATION_THRESHOLD) -> PaginationMode:
    return PaginationMode.ALL_LOADED if total_count < threshold else PaginationMode.WINDOWED


def resolve_window(
    page_number: int,
    page_size: int,
    start_row: Optional[int] = None,
    end_row: Optional[int] = None,
) -> Window:
    """
    Normalize request addressing to offset/limit.

    Explicit ``start_row``/``end_row`` (1-based, inclusive) win when both are
    given; otherwise page addressing applies.
    """
    if start_row is not None and end_row is not None:
        start = max(start_row, 1)
        return Window(offset=start - 1, limit=max(end_row - start + 1, 0))
    page = max(page_number, 1)
    size = max(page_size, 0)
    return Window(offset=(page - 1) * size, limit=size)


class PaginationSelector:
    """
    Per-session pagination mode decisions.

    State lives in a bounded TTL cache keyed by (session id, procedure name),
    so two sessions on the same dataset decide independently. Requests without
    a session id are decided per request.
    """

    def __init__(
        self,
        threshold: int = PAGINATION_THRESHOLD,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        max_sessions: int = SESSION_CACHE_SIZE,
    ):
        self.threshold = threshold
        self._sessions: TTLCache = TTLCache(maxsize=max_sessions, ttl=ttl_seconds)
        self._lock = threading.Lock()

    def observe(
        self,
        session_id: Optional[str],
        procedure_name: str,
        total_count: int,
        query_signature: str,
    ) -> Tuple[PaginationMode, bool]:
        """
        Record a count for the session and return ``(mode, query_changed)``.

        ``query_changed`` is True when the session already had a decision and
        the sort/filter signature differs from the previous request.
        """
        if not session_id:
            return choose_mode(total_count, self.threshold), False

        key = (session_id, procedure_name)
        with self._lock:
            state = self._sessions.get(key)
            if state is None:
                mode = choose_mode(total_count, self.threshold)
                self._sessions[key] = _SessionState(mode, query_signature)
                logger.info(
                    f"Pagination mode {mode.value} for session={session_id} "
                    f"procedure={procedure_name} (count={total_count}, "
                    f"threshold={self.threshold})"
                )
                return mode, False

            changed = state.query_signature != query_signature
            state.query_signature = query_signature
            # Reassign to refresh the TTL
            self._sessions[key] = state
            return state.mode, changed

    def reset(self, session_id: Optional[str] = None, procedure_name: Optional[str] = None) -> None:
        """Forget decisions for one session, or for every session when none is named."""
        with self._lock:
            if session_id is None:
                self._sessions.clear()
                return
            for key in list(self._sessions.keys()):
                if key[0] == session_id and (procedure_name is None or key[1] == procedure_name):
                    del self._sessions[key]
