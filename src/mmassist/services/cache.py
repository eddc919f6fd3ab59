import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedChannel:
    id: str
    name: str
    display_name: str = ""
    type: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CachedUser:
    id: str
    username: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _unique(values: Iterable[Any]) -> List[Any]:
    seen: set = set()
    unique: List[Any] = []
    for value in values:
        if value.id not in seen:
            seen.add(value.id)
            unique.append(value)
    return unique


class ReferenceDataCache:
    """Time-boxed lookup table of channels and users, keyed by every alias.

    Each table is rebuilt off to the side and swapped in as a whole, so
    readers never see a half-updated table. Validity is a single age check
    on the last refresh, not per entry.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._channels: Dict[str, CachedChannel] = {}
        self._users: Dict[str, CachedUser] = {}
        self._updated_at: Optional[float] = None
        self._updated_wall: Optional[datetime] = None
        self.refresh_lock = asyncio.Lock()

    @staticmethod
    def _index_channels(channels: Iterable[CachedChannel]) -> Dict[str, CachedChannel]:
        table: Dict[str, CachedChannel] = {}
        for channel in channels:
            table[channel.id.lower()] = channel
            table[channel.name.lower()] = channel
            if channel.display_name:
                table[channel.display_name.lower()] = channel
        return table

    @staticmethod
    def _index_users(users: Iterable[CachedUser]) -> Dict[str, CachedUser]:
        table: Dict[str, CachedUser] = {}
        for user in users:
            table[user.id.lower()] = user
            table[user.username.lower()] = user
            if user.email:
                table[user.email.lower()] = user
        return table

    def replace(
        self,
        channels: Iterable[CachedChannel],
        users: Iterable[CachedUser],
        complete: bool = True,
    ) -> None:
        """Swap in both tables at once.

        Args:
            channels: Every known channel; replaces the whole channel table.
            users: Every known user; replaces the whole user table.
            complete: False when one of the listings failed. The tables are
                still installed, but the cache stays stale so lookups are not
                short-circuited and the next request refreshes again.
        """
        channel_table = self._index_channels(channels)
        user_table = self._index_users(users)
        self._channels, self._users = channel_table, user_table
        if complete:
            self._updated_at = self._clock()
            self._updated_wall = datetime.now(timezone.utc)
        else:
            self._updated_at = None
        logger.info(
            "Cached %d channels and %d users (%s)",
            len(self.all_channels()),
            len(self.all_users()),
            "complete" if complete else "partial, marked stale",
        )

    def get_channel(self, name_or_id: str) -> Optional[CachedChannel]:
        return self._channels.get(str(name_or_id).strip().lower())

    def get_user(self, username_email_or_id: str) -> Optional[CachedUser]:
        return self._users.get(str(username_email_or_id).strip().lstrip("@").lower())

    def all_channels(self) -> List[CachedChannel]:
        return _unique(self._channels.values())

    def all_users(self) -> List[CachedUser]:
        return _unique(self._users.values())

    def is_valid(self) -> bool:
        if self._updated_at is None:
            return False
        return (self._clock() - self._updated_at) < self._ttl

    def is_empty(self) -> bool:
        return not self._channels and not self._users

    def stats(self) -> Dict[str, Any]:
        return {
            "channels": len(self.all_channels()),
            "users": len(self.all_users()),
            "lastUpdated": self._updated_wall.isoformat() if self._updated_wall else None,
            "isValid": self.is_valid(),
            "isEmpty": self.is_empty(),
        }

    def format_compact_channels(self) -> str:
        channels = self.all_channels()
        if not channels:
            return "No channels available."
        names = ", ".join(ch.display_name or ch.name for ch in channels)
        return f"Available Channels ({len(channels)}): {names}"

    def format_compact_users(self) -> str:
        users = self.all_users()
        if not users:
            return "No users available."
        names = ", ".join(f"@{u.username}" for u in users)
        return f"Available Users ({len(users)}): {names}"

    def clear(self) -> None:
        self._channels = {}
        self._users = {}
        self._updated_at = None
        self._updated_wall = None
        logger.info("Reference cache cleared")


# Process-wide instance shared by all conversations
_reference_cache: ReferenceDataCache | None = None


def get_reference_cache() -> ReferenceDataCache:
    """Return the shared reference cache, creating it on first use."""
    global _reference_cache
    if _reference_cache is None:
        _reference_cache = ReferenceDataCache(ttl_seconds=get_settings().cache_ttl_seconds)
    return _reference_cache


def reset_reference_cache() -> None:
    """Drop the shared instance; the next get_reference_cache() builds a new one."""
    global _reference_cache
    _reference_cache = None
