import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP


_DATA_DIR = Path(__file__).resolve().parent / "data"
_CHANNELS_PATH = _DATA_DIR / "channels.json"
_USERS_PATH = _DATA_DIR / "users.json"
_POSTS_PATH = _DATA_DIR / "posts.json"


def _load(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _save_posts(posts: List[Dict[str, Any]]) -> None:
    with open(_POSTS_PATH, "w", encoding="utf-8") as f:
        json.dump(posts, f, indent=2)


def _check_access(user_email: str) -> Optional[str]:
    """Return an error payload when the acting user is not a workspace member."""
    if not user_email:
        return None
    emails = {u["email"].lower() for u in _load(_USERS_PATH)}
    if user_email.lower() in emails:
        return None
    return json.dumps({"error": f"Unauthorized: {user_email} is not a member of this workspace"})


def _find_channel(ref: str) -> Optional[Dict[str, Any]]:
    needle = ref.strip().lower()
    for channel in _load(_CHANNELS_PATH):
        if needle in (channel["id"], channel["name"].lower(), channel["display_name"].lower()):
            return channel
    return None


mcp = FastMCP("Mattermost Mock", json_response=True)


@mcp.tool()
def mattermost_list_channels(userEmail: str = "") -> str:
    """List every channel in the workspace."""
    denied = _check_access(userEmail)
    if denied:
        return denied
    return json.dumps({"channels": _load(_CHANNELS_PATH)}, indent=2)


@mcp.tool()
def mattermost_search_channels(search_term: str, userEmail: str = "") -> str:
    """Find channels whose name or display name contains the search term."""
    denied = _check_access(userEmail)
    if denied:
        return denied
    term = search_term.strip().lower()
    matches = [
        c for c in _load(_CHANNELS_PATH)
        if term in c["name"].lower() or term in c["display_name"].lower()
    ]
    return json.dumps({"channels": matches}, indent=2)


@mcp.tool()
def mattermost_get_users(userEmail: str = "", limit: int = 100) -> str:
    """List workspace members."""
    denied = _check_access(userEmail)
    if denied:
        return denied
    return json.dumps({"users": _load(_USERS_PATH)[:limit]}, indent=2)


@mcp.tool()
def mattermost_summarize_channel(
    channel: str,
    time_range: str = "all",
    message_limit: int = 50,
    userEmail: str = "",
) -> str:
    """Return recent messages of a channel (by id, name or display name) for summarizing."""
    denied = _check_access(userEmail)
    if denied:
        return denied
    found = _find_channel(channel)
    if found is None:
        return json.dumps({"error": f"Channel not found: {channel}"})
    posts = [p for p in _load(_POSTS_PATH) if p["channel_id"] == found["id"]]
    return json.dumps(
        {
            "channel": found["name"],
            "time_range": time_range,
            "message_count": len(posts[-message_limit:]),
            "messages": posts[-message_limit:],
        },
        indent=2,
    )


@mcp.tool()
def mattermost_post_message(channel: str, message: str, userEmail: str = "") -> str:
    """Post a message to a channel. Side effect: persists to the local JSON file."""
    denied = _check_access(userEmail)
    if denied:
        return denied
    found = _find_channel(channel)
    if found is None:
        return json.dumps({"error": f"Channel not found: {channel}"})
    users = {u["email"].lower(): u["username"] for u in _load(_USERS_PATH)}
    post = {
        "id": uuid.uuid4().hex[:26],
        "channel_id": found["id"],
        "user": users.get(userEmail.lower(), "assistant"),
        "message": message,
        "create_at": datetime.now(timezone.utc).isoformat(),
    }
    posts = _load(_POSTS_PATH)
    posts.append(post)
    _save_posts(posts)
    return json.dumps({"success": True, "post": post}, indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
