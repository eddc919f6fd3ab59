"""Conversation engine for the Mattermost assistant.

The service drives LLM turns; the dispatcher, recovery strategies, response
validator and streaming relay live in their own modules.
"""

from .agent import ChatAgentService, ChatOutcome, get_agent_service, run_chat

__all__ = [
    "ChatAgentService",
    "ChatOutcome",
    "get_agent_service",
    "run_chat",
]
