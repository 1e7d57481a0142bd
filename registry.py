import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from errors import MatchNotFoundError, MatchValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PLAYERS = 8
HEARTBEAT_TIMEOUT = 120.0
RECENT_WINDOW = 30.0
MAX_LISTED_MATCHES = 100


@dataclass
class Match:
    match_id: str
    host_name: str
    proxy_address: str
    proxy_port: int
    map: str
    max_players: int
    players_connected: int
    created_at: float
    last_heartbeat: float

    @property
    def proxy_url(self) -> str:
        return f"{self.proxy_address}:{self.proxy_port}"


@dataclass(frozen=True)
class MatchView:
    """Read-only projection of an active match, as shown to clients."""
    match_id: str
    host_name: str
    proxy_address: str
    proxy_port: int
    proxy_url: str
    map: str
    max_players: int
    players_connected: int
    age: int  # Whole minutes since registration
    is_recent: bool
    last_heartbeat: float


@dataclass(frozen=True)
class MatchListing:
    matches: List[MatchView]
    total: int
    timestamp: float


@dataclass(frozen=True)
class RegistryStats:
    total_stored: int
    active_count: int
    uptime: float  # Seconds since the registry was created


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce_int(value: Any) -> Optional[int]:
    """Coerce ints, integral floats and numeric strings; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


class MatchRegistry:
    """In-memory store of advertised matches.

    Matches are never expired implicitly: a match whose heartbeat is older
    than ``heartbeat_timeout`` is hidden from listings and active counts but
    stays stored until it is unregistered or ``remove_stale`` evicts it.
    """

    def __init__(
        self,
        *,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        recent_window: float = RECENT_WINDOW,
        max_listed: int = MAX_LISTED_MATCHES,
        default_max_players: int = DEFAULT_MAX_PLAYERS,
        clock: Callable[[], float] = time.time,
    ):
        if heartbeat_timeout <= 0:
            raise ValueError("heartbeat_timeout must be > 0")
        if max_listed < 1:
            raise ValueError("max_listed must be >= 1")

        self.heartbeat_timeout = heartbeat_timeout
        self.recent_window = recent_window
        self.max_listed = max_listed
        self.default_max_players = default_max_players
        self._clock = clock
        self._lock = threading.RLock()
        self._matches: Dict[str, Match] = {}
        self.started_at = clock()

    def __len__(self) -> int:
        return len(self._matches)

    def _is_active(self, match: Match, now: float) -> bool:
        return now - match.last_heartbeat < self.heartbeat_timeout

    def register(
        self,
        host_name: Any,
        proxy_address: Any,
        proxy_port: Any,
        map_name: Any,
        max_players: Any = None,
    ) -> Match:
        """Validate the input and store a new match.

        Raises:
            MatchValidationError: a required field is missing or blank
                (missing_fields), or has the wrong type (invalid_fields).
                Nothing is stored.
        """
        missing = []
        invalid = []

        def text_field(name: str, value: Any) -> Optional[str]:
            if _is_blank(value):
                missing.append(name)
            elif not isinstance(value, str):
                invalid.append(name)
            else:
                return value.strip()
            return None

        host_name = text_field("hostName", host_name)
        proxy_address = text_field("proxyAddress", proxy_address)
        port = _coerce_int(proxy_port)
        if _is_blank(proxy_port):
            missing.append("proxyPort")
        elif not port:
            # Rejects port 0 and non-numeric ports
            invalid.append("proxyPort")
        map_name = text_field("map", map_name)

        if max_players is None:
            players = self.default_max_players
        else:
            players = _coerce_int(max_players)
            if players is None:
                invalid.append("maxPlayers")

        if missing or invalid:
            details = {}
            if missing:
                details["missing_fields"] = missing
            if invalid:
                details["invalid_fields"] = invalid
            raise MatchValidationError(
                "Missing fields: hostName, proxyAddress, proxyPort, map required",
                details,
            )

        now = self._clock()
        match = Match(
            match_id=str(uuid.uuid4()),
            host_name=host_name,
            proxy_address=proxy_address,
            proxy_port=port,
            map=map_name,
            max_players=players,
            players_connected=0,
            created_at=now,
            last_heartbeat=now,
        )

        with self._lock:
            self._matches[match.match_id] = match

        logger.info(f"{match.host_name} hosted {match.map} -> {match.proxy_url}")
        return match

    def get(self, match_id: Any) -> Optional[Match]:
        # Ids are always strings; anything else is simply unknown
        if not isinstance(match_id, str):
            return None
        with self._lock:
            return self._matches.get(match_id)

    def heartbeat(self, match_id: Any) -> Match:
        """Refresh the heartbeat timestamp of a match."""
        with self._lock:
            match = self.get(match_id)
            if match is None:
                raise MatchNotFoundError("Match not found or expired", {"id": match_id})
            match.last_heartbeat = self._clock()
            return match

    def unregister(self, match_id: Any) -> Match:
        """Remove a match, active or stale."""
        with self._lock:
            match = self.get(match_id)
            if match is not None:
                del self._matches[match_id]
        if match is None:
            raise MatchNotFoundError("Match not found", {"id": match_id})

        logger.info(f"Match {match.host_name} stopped ({match.match_id})")
        return match

    def list_active(self) -> MatchListing:
        """Active matches, most recently refreshed first, capped at max_listed."""
        now = self._clock()
        with self._lock:
            active = [m for m in self._matches.values() if self._is_active(m, now)]

        # sorted() is stable, so ties keep registration order
        active = sorted(active, key=lambda m: m.last_heartbeat, reverse=True)
        views = [self._to_view(m, now) for m in active[:self.max_listed]]
        return MatchListing(matches=views, total=len(views), timestamp=now)

    def _to_view(self, match: Match, now: float) -> MatchView:
        return MatchView(
            match_id=match.match_id,
            host_name=match.host_name,
            proxy_address=match.proxy_address,
            proxy_port=match.proxy_port,
            proxy_url=match.proxy_url,
            map=match.map,
            max_players=match.max_players,
            players_connected=match.players_connected,
            age=math.floor((now - match.created_at) / 60),
            is_recent=now - match.last_heartbeat < self.recent_window,
            last_heartbeat=match.last_heartbeat,
        )

    def count_active(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for m in self._matches.values() if self._is_active(m, now))

    def stats(self) -> RegistryStats:
        now = self._clock()
        with self._lock:
            total = len(self._matches)
            active = sum(1 for m in self._matches.values() if self._is_active(m, now))
        return RegistryStats(
            total_stored=total,
            active_count=active,
            uptime=now - self.started_at,
        )

    def remove_stale(self, max_age: float) -> int:
        """Evict matches whose last heartbeat is at least max_age seconds old."""
        if max_age <= self.heartbeat_timeout:
            raise ValueError("max_age must exceed heartbeat_timeout")

        now = self._clock()
        with self._lock:
            stale = [
                match_id for match_id, m in self._matches.items()
                if now - m.last_heartbeat >= max_age
            ]
            for match_id in stale:
                del self._matches[match_id]
        return len(stale)
