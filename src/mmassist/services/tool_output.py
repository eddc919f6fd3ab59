"""Normalization and classification of raw tool output.

Tool providers return heterogeneous shapes (MCP result objects, nested
JSON envelopes, plain strings) and report failures as free text. Errors are
classified with ordered substring checks on the lower-cased message:
authorization phrases first, since an auth failure must never be treated as
a retryable "not found". This is brittle by construction; structured error
codes from the providers would replace it.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from ..models import ErrorKind

logger = logging.getLogger(__name__)

AUTH_PATTERNS = (
    "unauthorized",
    "permission",
    "access denied",
    "not authorized",
    "forbidden",
    "user not found",
)
NOT_FOUND_PATTERNS = ("not found", "404", "does not exist")
INVALID_PARAMS_PATTERNS = ("invalid", "bad request", "400", "validation error")
TIMEOUT_PATTERNS = ("timeout", "timed out")

_HTTP_STATUS_RE = re.compile(r"\b(404|400|401|403|500|502|503)\b")
_ERROR_PREFIXES = ("error:", "exception:", "failed to ", "unable to ")
_DATA_KEYS = ("channels", "users", "data", "results")


def classify_error(message: str) -> ErrorKind:
    """Map an error or result string to an ErrorKind."""
    lowered = (message or "").lower()
    if any(p in lowered for p in AUTH_PATTERNS):
        return ErrorKind.AUTH
    if any(p in lowered for p in NOT_FOUND_PATTERNS):
        return ErrorKind.NOT_FOUND
    if any(p in lowered for p in INVALID_PARAMS_PATTERNS):
        return ErrorKind.INVALID_PARAMS
    if any(p in lowered for p in TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    return ErrorKind.OTHER


@dataclass
class ParsedToolOutput:
    content: str
    is_error: bool = False
    error_kind: Optional[ErrorKind] = None


def _first_text(content: Any) -> Optional[str]:
    if isinstance(content, list) and content:
        first = content[0]
        text = first.get("text") if isinstance(first, dict) else getattr(first, "text", None)
        if isinstance(text, str) and text:
            return text
    return None


def _unwrap(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        result = raw.get("result")
        if isinstance(result, dict):
            text = _first_text(result.get("content"))
            if text is not None:
                return text
        text = _first_text(raw.get("content"))
        if text is not None:
            return text
        return json.dumps(raw, default=str)
    # MCP CallToolResult and similar objects
    text = _first_text(getattr(raw, "content", None))
    if text is not None:
        return text
    if hasattr(raw, "model_dump"):
        return json.dumps(raw.model_dump(), default=str)
    return json.dumps(raw, default=str)


def detect_error(content: str) -> bool:
    """Heuristically decide whether a tool payload reports a failure."""
    if not content:
        return False
    lowered = content.lower()
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict):
        if parsed.get("error") is not None:
            return True
        if parsed.get("success") is False:
            return True
        if any(key in parsed for key in _DATA_KEYS):
            return False
    elif isinstance(parsed, list):
        return False

    if '"error":' in lowered or '"success": false' in lowered:
        return True
    if _HTTP_STATUS_RE.search(lowered) and ("status" in lowered or "code" in lowered):
        return True
    head = lowered[:100]
    return any(prefix in head for prefix in _ERROR_PREFIXES)


def parse_tool_output(raw: Any) -> ParsedToolOutput:
    """Normalize whatever a tool returned into content plus an error verdict."""
    content = _unwrap(raw)

    try:
        nested = json.loads(content)
    except (json.JSONDecodeError, TypeError, ValueError):
        nested = None
    if isinstance(nested, dict):
        text = _first_text(nested.get("content"))
        if text is not None:
            content = text

    flagged = bool(
        raw.get("isError") if isinstance(raw, dict) else getattr(raw, "isError", False)
    )
    is_error = flagged or detect_error(content)
    if is_error:
        logger.debug("Tool output detected as error: %s", content[:200])
    return ParsedToolOutput(
        content=content,
        is_error=is_error,
        error_kind=classify_error(content) if is_error else None,
    )


def extract_error_message(error: Any) -> str:
    """Pull a readable message out of an exception or nested error payload."""
    if error is None:
        return "Unknown error"
    message = str(error) or type(error).__name__

    if "{" in message:
        try:
            parsed = json.loads(message[message.index("{"):])
        except (json.JSONDecodeError, ValueError):
            parsed = None
        if isinstance(parsed, dict):
            inner = parsed.get("error")
            if isinstance(inner, dict) and inner.get("message"):
                try:
                    nested = json.loads(inner["message"])
                except (json.JSONDecodeError, TypeError, ValueError):
                    return str(inner["message"])
                if isinstance(nested, dict) and nested.get("error"):
                    return str(nested["error"])
                return str(inner["message"])
            if parsed.get("message"):
                return str(parsed["message"])

    if "Access Denied" in message or "permission" in message:
        match = re.search(r'Access Denied:[^"]+', message)
        if match:
            return match.group(0)
    return message


