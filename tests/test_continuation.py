import asyncio
import json

import pytest

from dualsub.continuation import (
    CONTINUE_PROMPT, Malformed, Parsed, Truncated, generate_long_output,
    parse_model_output, require_items,
)
from dualsub.exceptions import ModelOutputError
from dualsub.llm import ModelRequest, Part, Turn
from dualsub.retry import RetryPolicy

from fakes import FakeModelAdapter

REFERENCE = [
    {"id": 1, "text_original": "Hello [there]", "text_translated": "你好"},
    {"id": 2, "text_original": "He said \"wait]\"", "text_translated": "他说"},
    {"id": 3, "text_original": "Bye", "text_translated": "再见"},
]


def _request():
    return ModelRequest(
        model="test-model",
        system_instruction="system",
        turns=(Turn.user(Part.from_text("translate")),),
        label="test",
    )


class TestParseModelOutput:
    def test_plain_array(self):
        assert parse_model_output(json.dumps(REFERENCE)) == Parsed(REFERENCE)

    def test_fenced_array(self):
        text = "```json\n" + json.dumps(REFERENCE) + "\n```"
        assert parse_model_output(text) == Parsed(REFERENCE)

    def test_object_wrapping_items_or_subtitles(self):
        assert parse_model_output(json.dumps({"items": REFERENCE})) == Parsed(REFERENCE)
        assert parse_model_output(json.dumps({"subtitles": REFERENCE})) == Parsed(REFERENCE)

    def test_salvages_array_surrounded_by_prose(self):
        text = "Sure! Here you go:\n" + json.dumps(REFERENCE) + "\nLet me know [if] you need more."
        assert parse_model_output(text) == Parsed(REFERENCE)

    def test_truncated_mid_element(self):
        text = json.dumps(REFERENCE)[:-25]
        outcome = parse_model_output(text)
        assert isinstance(outcome, Truncated)

    def test_brackets_inside_strings_do_not_close_the_array(self):
        text = '[{"text": "closing ] bracket and escaped \\" quote ]"}'
        assert isinstance(parse_model_output(text), Truncated)

    def test_no_array_is_malformed(self):
        assert isinstance(parse_model_output("I cannot help with that."), Malformed)

    def test_empty_is_malformed(self):
        assert isinstance(parse_model_output(""), Malformed)

    def test_balanced_but_invalid_json_is_malformed(self):
        assert isinstance(parse_model_output("[{id: 1,}]"), Malformed)

    def test_skips_bracketed_prose_before_the_array(self):
        text = 'Refined output [JSON]:\n[{"start":"00:00:01,000","end":"00:00:02,000","text":"hi"}]'
        assert parse_model_output(text) == Parsed([{"start": "00:00:01,000", "end": "00:00:02,000", "text": "hi"}])

    def test_bracketed_prose_before_a_truncated_array(self):
        text = 'Output [JSON]:\n[{"start":"00:00:01,000","end":"00:0'
        assert isinstance(parse_model_output(text), Truncated)

    def test_outermost_array_wins_over_nested_ones(self):
        assert parse_model_output('noise [[1, 2], ["]"]] tail ]') == Parsed([[1, 2], ["]"]])


def test_require_items_raises_on_truncation():
    with pytest.raises(ModelOutputError):
        require_items('[{"id": 1')


def test_split_response_is_reassembled_by_continuation():
    full = json.dumps(REFERENCE)
    cut = len(full) // 2
    responses = iter([full[:cut], full[cut:]])
    adapter = FakeModelAdapter(lambda request: next(responses))

    text = asyncio.run(generate_long_output(adapter, _request(), RetryPolicy(), max_attempts=3))

    assert json.loads(text) == REFERENCE
    assert len(adapter.requests) == 2
    continued = adapter.requests[1]
    assert [turn.role for turn in continued.turns] == ["user", "model", "user"]
    assert continued.turns[1].parts[0].text == full[:cut]
    assert continued.turns[2].parts[0].text == CONTINUE_PROMPT


def test_complete_response_needs_a_single_call():
    adapter = FakeModelAdapter(lambda request: json.dumps(REFERENCE))
    text = asyncio.run(generate_long_output(adapter, _request(), RetryPolicy()))
    assert json.loads(text) == REFERENCE
    assert len(adapter.requests) == 1


def test_gives_up_after_max_attempts_and_returns_accumulated_text():
    adapter = FakeModelAdapter(lambda request: '[{"id": 1, ')
    text = asyncio.run(generate_long_output(adapter, _request(), RetryPolicy(), max_attempts=3))
    assert len(adapter.requests) == 3
    assert text == '[{"id": 1, ' * 3
    with pytest.raises(ModelOutputError):
        require_items(text)


def test_malformed_output_also_asks_for_continuation():
    responses = iter(["Working on it...", json.dumps(REFERENCE)])
    adapter = FakeModelAdapter(lambda request: next(responses))
    text = asyncio.run(generate_long_output(adapter, _request(), RetryPolicy(), max_attempts=3))
    assert len(adapter.requests) == 2
    assert require_items(text) == REFERENCE
