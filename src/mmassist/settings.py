from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: str = "*"

    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    stream_turns: bool = False

    max_loops: int = 6
    max_errors: int = 5
    max_consecutive_tool_failures: int = 2
    tool_timeout_seconds: float = 30.0

    mcp_portal_name: str = "SystemMCPportal"
    mcp_portal_url: str | None = None
    mcp_portal_client_id: str | None = None
    mcp_portal_client_secret: str | None = None
    mcp_audience: str = "mcp-client-agent"
    mcp_local_cmd: str | None = None
    tool_discovery_attempts: int = 3
    tool_discovery_delay_seconds: float = 1.5
    user_identity_argument: str = "userEmail"

    cache_ttl_seconds: int = 300  # 5 minutes

    agent_auth_secret: str | None = None
    auth_header_name: str = "X-Agent-Auth"

    redis_url: str | None = None
    notification_batch_size: int = 5
    webhook_timeout_seconds: float = 10.0

    agent_system_prompt: str = (
        "You are a team communication assistant for a Mattermost workspace.\n\n"
        " Your Role\n"
        "You help people find channels, read and summarize conversations, "
        "look up teammates and post messages on their behalf.\n\n"
        " How to work\n"
        " - When you need information, call the matching tool right away.\n"
        " - Resolve channel and user names to IDs with the search or list tools "
        "before calling tools that need an ID.\n"
        " - Be flexible when matching names: try exact, case-insensitive and "
        "partial matches before giving up.\n"
        " - If a tool fails, try to fix the call before telling the user.\n\n"
        " How to answer\n"
        " - Never mention tool names, function names, parameters or IDs.\n"
        " - Present results in plain, friendly language with line breaks.\n"
        " - If you lack access to something, say so simply."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
