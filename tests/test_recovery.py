from mmassist.agent.recovery import ErrorRecoveryService, RecoveryContext, looks_like_opaque_id
from mmassist.models import ErrorKind, RecoveryKind, ToolError, ToolResult, ToolStatus
from mmassist.services.tool_output import classify_error

TOOLS = [
    "mattermost_search_channels",
    "mattermost_get_users",
    "mattermost_search_messages",
    "mattermost_summarize_channel",
]


def failed(tool_name: str, message: str, status: ToolStatus = ToolStatus.ERROR) -> ToolResult:
    return ToolResult(
        tool_call_id="call_1",
        tool_name=tool_name,
        status=status,
        error=ToolError(kind=classify_error(message), message=message),
    )


def test_permission_denied_is_auth_and_not_recoverable() -> None:
    service = ErrorRecoveryService()
    result = failed("mattermost_post_message", "Permission denied")
    assert result.error_kind == ErrorKind.AUTH
    assert service.is_critical_error(result)

    action = service.get_recovery_action(result, RecoveryContext(user_id="alice@example.com"))
    assert action.kind == RecoveryKind.INFORM_USER
    assert action.is_recoverable is False
    assert "alice@example.com" in action.message["content"]


def test_not_found_with_opaque_id_means_bot_is_not_a_member() -> None:
    service = ErrorRecoveryService()
    channel_id = "k8mzq3w1c7f9ybx4t2hdrn6pae"
    assert looks_like_opaque_id(channel_id)
    action = service.get_recovery_action(
        failed("mattermost_summarize_channel", "Channel not found"),
        RecoveryContext(original_arguments={"channel": channel_id}, available_tools=TOOLS),
    )
    assert action.kind == RecoveryKind.INFORM_USER
    assert action.helper_tool is None
    assert "not a member" in action.message["content"]


def test_not_found_retries_with_discovered_id() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(
        failed("mattermost_summarize_channel", "Channel not found"),
        RecoveryContext(
            original_arguments={"channel": "Dev Team", "time_range": "today"},
            discovered_ids={"dev-team": "k8mzq3w1c7f9ybx4t2hdrn6pae"},
        ),
    )
    assert action.kind == RecoveryKind.RETRY
    assert action.modified_arguments == {"channel": "k8mzq3w1c7f9ybx4t2hdrn6pae", "time_range": "today"}


def test_not_found_channel_name_asks_for_search_first() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(
        failed("mattermost_summarize_channel", "Channel not found"),
        RecoveryContext(original_arguments={"channel": "marketing"}, available_tools=TOOLS),
    )
    assert action.kind == RecoveryKind.CALL_HELPER_TOOL
    assert action.helper_tool == "mattermost_search_channels"
    assert action.is_recoverable


def test_not_found_username_asks_for_user_listing() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(
        failed("mattermost_send_dm", "does not exist"),
        RecoveryContext(original_arguments={"username": "alicia"}, available_tools=TOOLS),
    )
    assert action.kind == RecoveryKind.CALL_HELPER_TOOL
    assert action.helper_tool == "mattermost_get_users"


def test_not_found_post_asks_for_message_search() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(
        failed("mattermost_reply", "404"),
        RecoveryContext(original_arguments={"post_id": "abc"}, available_tools=TOOLS),
    )
    assert action.helper_tool == "mattermost_search_messages"


def test_invalid_params_surfaces_detail() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(
        failed("mattermost_get_users", "Invalid limit: must be positive"),
        RecoveryContext(),
    )
    assert action.kind == RecoveryKind.INFORM_USER
    assert "Invalid limit: must be positive" in action.message["content"]


def test_timeout_retried_once_then_surfaced() -> None:
    service = ErrorRecoveryService()
    result = failed("slow_tool", "Tool execution timed out", status=ToolStatus.TIMEOUT)
    assert service.get_recovery_action(result, RecoveryContext(attempt=0)).kind == RecoveryKind.RETRY
    assert service.get_recovery_action(result, RecoveryContext(attempt=1)).kind == RecoveryKind.INFORM_USER


def test_other_error_gets_generic_guidance() -> None:
    service = ErrorRecoveryService()
    action = service.get_recovery_action(failed("x", "kaboom"), RecoveryContext())
    assert action.kind == RecoveryKind.INFORM_USER
    assert "kaboom" in action.message["content"]


def test_success_needs_no_action() -> None:
    service = ErrorRecoveryService()
    ok = ToolResult(tool_call_id="c", tool_name="t", status=ToolStatus.SUCCESS, content="{}")
    assert service.get_recovery_action(ok, RecoveryContext()).kind == RecoveryKind.NONE


def test_repeated_failure_forces_response() -> None:
    action = ErrorRecoveryService().repeated_failure_action("mattermost_search_channels", 2)
    assert action.kind == RecoveryKind.FORCE_RESPONSE
    assert "mattermost_search_channels" in action.message["content"]
