import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..settings import get_settings
from .cache import CachedChannel, CachedUser, ReferenceDataCache
from .tool_output import parse_tool_output

logger = logging.getLogger(__name__)

CHANNEL_LIST_TOOLS = (
    "mattermost_list_channels",
    "list_channels",
    "mattermost_search_channels",
    "search_channels",
    "get_channels",
)
USER_LIST_TOOLS = (
    "mattermost_get_users",
    "get_users",
    "list_users",
    "search_users",
)
_ARRAY_KEYS = ("data", "results", "items")


def find_tool(tools: Mapping[str, Any], preferred: Sequence[str]) -> Optional[str]:
    """Return the first tool name matching the preference order.

    Exact names win; otherwise the first case-insensitive substring match.
    """
    for candidate in preferred:
        if candidate in tools:
            return candidate
        for name in tools:
            if candidate.lower() in name.lower():
                return name
    return None


def _extract_array(content: str, primary_key: str) -> List[Any]:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning("Could not parse %s listing: %s", primary_key, e)
        logger.debug("Unparseable content: %s", content[:200])
        return []
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    for key in (primary_key, *_ARRAY_KEYS):
        value = data.get(key)
        if isinstance(value, list):
            return value
    return []


def parse_channels(content: str) -> List[CachedChannel]:
    channels: List[CachedChannel] = []
    for item in _extract_array(content, "channels"):
        if not isinstance(item, dict):
            continue
        channel_id = item.get("id") or item.get("channel_id") or ""
        name = item.get("name") or ""
        if not channel_id or not name:
            continue
        channels.append(
            CachedChannel(
                id=str(channel_id),
                name=str(name),
                display_name=str(item.get("display_name") or item.get("displayName") or name),
                type=str(item.get("type") or "unknown"),
            )
        )
    return channels


def parse_users(content: str) -> List[CachedUser]:
    users: List[CachedUser] = []
    for item in _extract_array(content, "users"):
        if not isinstance(item, dict):
            continue
        user_id = item.get("id") or item.get("user_id") or ""
        username = item.get("username") or item.get("name") or ""
        if not user_id or not username:
            continue
        users.append(
            CachedUser(
                id=str(user_id),
                username=str(username),
                email=str(item.get("email") or ""),
                first_name=str(item.get("first_name") or item.get("firstName") or ""),
                last_name=str(item.get("last_name") or item.get("lastName") or ""),
            )
        )
    return users


class DataFetcher:
    """Bulk-lists channels and users through discovery tools into the cache."""

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        settings = get_settings()
        self._timeout = timeout_seconds or settings.tool_timeout_seconds
        self._identity_argument = settings.user_identity_argument

    async def _fetch(
        self,
        tools: Mapping[str, Any],
        preferred: Sequence[str],
        user_id: Optional[str],
    ) -> Optional[str]:
        name = find_tool(tools, preferred)
        if name is None:
            logger.debug("No listing tool among %s", ", ".join(preferred))
            return None
        args: Dict[str, Any] = {self._identity_argument: user_id} if user_id else {}
        raw = await asyncio.wait_for(tools[name].invoke(args), timeout=self._timeout)
        parsed = parse_tool_output(raw)
        if parsed.is_error:
            logger.error("Listing tool %s returned an error: %s", name, parsed.content[:200])
            return None
        return parsed.content

    async def populate(
        self,
        tools: Mapping[str, Any],
        cache: ReferenceDataCache,
        user_id: Optional[str] = None,
    ) -> bool:
        """Fetch channels and users concurrently and swap them into the cache.

        Both tables are replaced together. When either listing fails, the
        table for that side is emptied and the cache is left stale rather
        than revalidating old entries.

        Args:
            tools: Available tools by name.
            cache: Cache to fill.
            user_id: Acting user, injected under the identity argument.

        Returns:
            bool: True only when both listings were fetched.
        """
        logger.info("Populating reference cache")
        channels_raw, users_raw = await asyncio.gather(
            self._fetch(tools, CHANNEL_LIST_TOOLS, user_id),
            self._fetch(tools, USER_LIST_TOOLS, user_id),
            return_exceptions=True,
        )

        success = True
        channels: List[CachedChannel] = []
        users: List[CachedUser] = []
        if isinstance(channels_raw, str):
            channels = parse_channels(channels_raw)
        else:
            logger.error("Failed to fetch channels: %s", channels_raw or "no data")
            success = False

        if isinstance(users_raw, str):
            users = parse_users(users_raw)
        else:
            logger.error("Failed to fetch users: %s", users_raw or "no data")
            success = False

        cache.replace(channels, users, complete=success)
        return success

    async def refresh_if_needed(
        self,
        tools: Mapping[str, Any],
        cache: ReferenceDataCache,
        user_id: Optional[str] = None,
    ) -> bool:
        """Populate the cache when it is stale or empty. Single-flight."""
        if cache.is_valid() and not cache.is_empty():
            return True
        async with cache.refresh_lock:
            # Another request may have refreshed while we waited.
            if cache.is_valid() and not cache.is_empty():
                return True
            return await self.populate(tools, cache, user_id)
