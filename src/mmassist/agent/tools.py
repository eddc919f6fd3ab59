import json
import logging
import re
from typing import Any, Dict, MutableMapping, Optional

logger = logging.getLogger(__name__)

NUMERIC_PARAMS = ("limit", "page", "message_limit", "max_channels")

# Keys under which tools reference a concrete resource. Also used by the
# dispatcher for dependency detection.
IDENTIFIER_KEYS = ("channel", "channel_id", "user_id", "username", "post_id", "thread_id")

SENTINEL_VALUES = ("none", "null")

VALID_TIME_RANGES = ("today", "yesterday", "this_week", "this_month", "all")
_ISO_RANGE_RE = re.compile(r"^\d{4}-\d{2}-\d{2} to \d{4}-\d{2}-\d{2}$")
_US_RANGE_RE = re.compile(r"^\d{2}/\d{2}/\d{4} to \d{2}/\d{2}/\d{4}$")


def _to_number(value: str) -> Optional[float]:
    try:
        number = float(value)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


def sanitize_tool_args(
    tool_name: str,
    args: Dict[str, Any],
    user_id: Optional[str] = None,
    identity_argument: str = "userEmail",
) -> Dict[str, Any]:
    """Normalize LLM-provided arguments before a tool call.

    Args:
        tool_name: Name of the tool being called.
        args: Parsed argument object from the LLM.
        user_id: Identifier of the acting user, injected under identity_argument.
        identity_argument: Argument name the tools expect the user identifier in.

    Returns:
        Dict[str, Any]: A new argument dict; the input is not modified.
    """
    sanitized = dict(args or {})

    if user_id:
        sanitized[identity_argument] = user_id

    for key, value in list(sanitized.items()):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "true":
                sanitized[key] = True
            elif lowered == "false":
                sanitized[key] = False

    for param in NUMERIC_PARAMS:
        if param not in sanitized:
            continue
        value = sanitized[param]
        if isinstance(value, bool):
            del sanitized[param]
        elif isinstance(value, (int, float)):
            continue
        elif isinstance(value, str) and value.strip() and _to_number(value.strip()) is not None:
            sanitized[param] = _to_number(value.strip())
        else:
            # Unusable value: drop it so the tool applies its default.
            del sanitized[param]

    for key in IDENTIFIER_KEYS:
        value = sanitized.get(key)
        if isinstance(value, str) and value.strip().lower() in SENTINEL_VALUES:
            del sanitized[key]

    if "summarize" in tool_name and "time_range" in sanitized:
        time_range = sanitized["time_range"]
        valid = isinstance(time_range, str) and (
            time_range in VALID_TIME_RANGES
            or _ISO_RANGE_RE.match(time_range)
            or _US_RANGE_RE.match(time_range)
        )
        if not valid:
            sanitized["time_range"] = "all"

    return sanitized


def tool_signature(name: str, args: Dict[str, Any]) -> str:
    """Deterministic dedup / cache key for a tool call."""
    return f"{name}::{json.dumps(args, sort_keys=True, separators=(',', ':'), default=str)}"


def extract_discovered_ids(
    tool_name: str, content: str, discovered: MutableMapping[str, str]
) -> int:
    """Record name -> id pairs from a successful search or list result.

    Returns:
        int: Number of aliases recorded.
    """
    lowered = tool_name.lower()
    if not any(marker in lowered for marker in ("search", "list", "get_users", "get_channel")):
        return 0
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError, ValueError):
        return 0
    if not isinstance(parsed, dict):
        return 0

    recorded = 0
    for channel in parsed.get("channels") or []:
        if not isinstance(channel, dict) or not channel.get("id"):
            continue
        for alias in (channel.get("name"), channel.get("display_name")):
            if alias:
                discovered[str(alias).lower()] = channel["id"]
                recorded += 1
    for user in parsed.get("users") or []:
        if not isinstance(user, dict) or not user.get("id"):
            continue
        if user.get("username"):
            discovered[str(user["username"]).lower()] = user["id"]
            recorded += 1
    return recorded
