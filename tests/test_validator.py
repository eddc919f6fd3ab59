import pytest

from mmassist.agent.validator import ResponseValidator

CLEAN_ANSWER = "You have two channels:\n- general\n- dev-team"


def test_accepts_clean_text_idempotently() -> None:
    validator = ResponseValidator()
    first = validator.validate(CLEAN_ANSWER, loop_count=1, max_loops=6)
    second = validator.validate(CLEAN_ANSWER, loop_count=1, max_loops=6)
    assert first.is_valid and second.is_valid


def test_accepts_empty_text() -> None:
    assert ResponseValidator().validate("   ", 1, 6).is_valid


def test_rejects_leaked_tool_call_json() -> None:
    result = ResponseValidator().validate(
        '{"name": "mattermost_list_channels", "parameters": {}}', loop_count=5, max_loops=6
    )
    assert not result.is_valid
    assert result.issue == "leaked_json"
    assert result.correction["role"] == "user"


def test_plain_json_without_protocol_keys_is_accepted() -> None:
    assert ResponseValidator().validate('{"total": 3}', 1, 6).is_valid


@pytest.mark.parametrize(
    "text",
    [
        "The request should include the channel name.",
        "I will call the search tool next.",
        "Let me use the listing now.",
    ],
)
def test_rejects_describing_instead_of_acting(text: str) -> None:
    result = ResponseValidator().validate(text, loop_count=1, max_loops=6)
    assert result.issue == "describing_action"


def test_describing_check_suppressed_near_budget() -> None:
    result = ResponseValidator().validate("I will call the search tool next.", loop_count=3, max_loops=6)
    assert result.is_valid


@pytest.mark.parametrize(
    "text",
    [
        "The function call returned nothing useful.",
        "The parameters were wrong so nothing happened.",
        "I made a tool call to check.",
        "The API response was empty.",
    ],
)
def test_rejects_technical_jargon(text: str) -> None:
    result = ResponseValidator().validate(text, loop_count=4, max_loops=6)
    assert not result.is_valid
    assert result.issue == "technical_jargon"


def test_jargon_check_suppressed_on_last_loop() -> None:
    assert ResponseValidator().validate("I made a tool call to check.", 5, 6).is_valid


def test_prompts_have_expected_roles() -> None:
    validator = ResponseValidator()
    assert validator.initial_guidance()["role"] == "system"
    assert validator.no_response_message()["content"].startswith("Please continue")
    assert validator.final_response_prompt()["role"] == "user"
