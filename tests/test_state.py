from mmassist.agent.state import FALLBACK_ANSWER, AgentLoopState, ConversationState


def test_initialize_seeds_system_guidance_and_user_messages() -> None:
    state = ConversationState()
    state.initialize(
        "system prompt",
        [{"role": "user", "content": "list channels"}],
        guidance={"role": "system", "content": "call tools"},
    )
    assert [m["role"] for m in state.messages] == ["system", "system", "user"]
    assert state.messages[0]["content"] == "system prompt"


def test_initialize_accepts_plain_prompt() -> None:
    state = ConversationState()
    state.initialize("sys", "hello")
    assert state.messages[-1] == {"role": "user", "content": "hello"}


def test_can_continue_stops_at_loop_cap() -> None:
    state = ConversationState(max_loops=2)
    assert state.can_continue()
    state.increment_loop()
    state.increment_loop()
    assert not state.can_continue()


def test_can_continue_stops_at_error_cap() -> None:
    state = ConversationState(max_errors=2)
    state.record_tool_failure("a")
    state.record_tool_failure("b")
    assert not state.can_continue()


def test_can_continue_false_in_terminal_states() -> None:
    state = ConversationState()
    state.transition_to(AgentLoopState.COMPLETED)
    assert not state.can_continue()
    state.transition_to(AgentLoopState.FAILED)
    assert not state.can_continue()


def test_successful_signature_is_duplicate_and_replayable() -> None:
    state = ConversationState()
    state.record_tool_execution("list::{}", '{"channels": []}', True)
    assert state.is_duplicate_call("list::{}")
    assert state.get_previous_result("list::{}") == '{"channels": []}'


def test_failed_signature_is_not_duplicate() -> None:
    state = ConversationState()
    state.record_tool_execution("post::{}", "boom", False)
    assert not state.is_duplicate_call("post::{}")


def test_consecutive_failures_track_same_tool() -> None:
    state = ConversationState()
    state.record_tool_failure("search")
    assert not state.should_force_final_response()
    state.record_tool_failure("search")
    assert state.should_force_final_response()


def test_failure_of_other_tool_resets_streak() -> None:
    state = ConversationState()
    state.record_tool_failure("search")
    state.record_tool_failure("post")
    assert state.consecutive_failures == 1
    assert state.total_errors == 2


def test_success_resets_streak() -> None:
    state = ConversationState()
    state.record_tool_failure("search")
    state.record_tool_execution("search::{}", "ok", True)
    assert state.consecutive_failures == 0


def test_final_answer_is_last_non_empty_assistant_text() -> None:
    state = ConversationState()
    state.initialize("sys", "hi")
    state.add_message({"role": "assistant", "content": "first"})
    state.add_message({"role": "assistant", "content": "", "tool_calls": []})
    assert state.get_final_answer() == "first"


def test_final_answer_falls_back() -> None:
    state = ConversationState()
    state.initialize("sys", "hi")
    assert state.get_final_answer() == FALLBACK_ANSWER


def test_sanitized_messages_flatten_list_content() -> None:
    state = ConversationState()
    state.add_message({"role": "user", "content": [{"role": "user", "content": "nested"}]})
    state.add_message({"role": "user", "content": [{"text": "bare"}]})
    flattened = state.sanitized_messages()
    assert flattened[0]["content"] == "nested"
    assert flattened[1]["content"] == [{"type": "text", "text": "bare"}]


def test_metrics_keys() -> None:
    state = ConversationState()
    state.increment_loop()
    state.mark_progress()
    metrics = state.get_metrics()
    assert metrics == {
        "loops": 1,
        "productiveLoops": 1,
        "toolExecutions": 0,
        "successfulCalls": 0,
        "failedCalls": 0,
        "finalState": "initializing",
    }
