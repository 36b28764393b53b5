"""Tests for response recovery heuristics: salvaged calls, leaked syntax, premature stops."""

import json

import pytest

from coder.recovery import (
    ENCOURAGEMENTS,
    CompletionCheck,
    TextToolCallCheck,
    check_completion,
    check_tool_call_format,
    encouragement,
    extract_text_tool_calls,
)


class TestExtractTextToolCalls:
    def test_tool_calls_fragment(self):
        text = (
            "Let me look.\n"
            '{"tool_calls": [{"function": {"name": "read_file", '
            '"arguments": "{\\"file_path\\": \\"main.py\\"}"}}]}'
        )
        calls = extract_text_tool_calls(text)
        assert len(calls) == 1
        assert calls[0].id == "fallback_1"
        assert calls[0].name == "read_file"
        assert json.loads(calls[0].arguments) == {"file_path": "main.py"}

    def test_dict_arguments_serialized(self):
        text = '{"tool_calls": [{"name": "shell_command", "arguments": {"command": "ls"}}]}'
        calls = extract_text_tool_calls(text)
        assert json.loads(calls[0].arguments) == {"command": "ls"}

    def test_legacy_cmd_array(self):
        calls = extract_text_tool_calls('{"cmd": ["bash", "-lc", "ls -la src"]}')
        assert calls[0].name == "shell_command"
        assert json.loads(calls[0].arguments) == {"command": "ls -la src"}

    def test_legacy_cmd_plain_argv(self):
        calls = extract_text_tool_calls('{"cmd": ["grep", "-rn", "two words", "."]}')
        assert json.loads(calls[0].arguments) == {"command": "grep -rn 'two words' ."}

    def test_multiple_calls_numbered(self):
        text = '{"cmd": ["ls"]} then {"cmd": ["pwd"]}'
        assert [c.id for c in extract_text_tool_calls(text)] == [
            "fallback_1",
            "fallback_2",
        ]

    def test_content_wins_over_reasoning(self):
        content = '{"cmd": ["ls"]}'
        reasoning = '{"cmd": ["pwd"]}'
        calls = extract_text_tool_calls(content, reasoning)
        assert len(calls) == 1
        assert json.loads(calls[0].arguments) == {"command": "ls"}

    def test_falls_back_to_reasoning(self):
        calls = extract_text_tool_calls("", '{"cmd": ["pwd"]}')
        assert json.loads(calls[0].arguments) == {"command": "pwd"}

    def test_nothing_found(self):
        assert extract_text_tool_calls("All done, no tools needed.", None) == []

    def test_broken_json_ignored(self):
        assert extract_text_tool_calls('{"tool_calls": [{"name": ') == []


class TestToolCallFormat:
    @pytest.mark.parametrize(
        "text",
        [
            '<tool_call>{"name": "read_file"}</tool_call>',
            'I will call {"tool_calls": [',
            "<|call|>shell_command",
            "assistant to=functions.shell_command",
        ],
    )
    def test_malformed(self, text):
        assert check_tool_call_format(text) is TextToolCallCheck.MALFORMED

    def test_clean(self):
        assert check_tool_call_format("The function parses JSON.") is TextToolCallCheck.CLEAN
        assert check_tool_call_format(None) is TextToolCallCheck.CLEAN


class TestCompletion:
    def test_empty(self):
        assert check_completion("") is CompletionCheck.EMPTY
        assert check_completion("   \n") is CompletionCheck.EMPTY
        assert check_completion(None) is CompletionCheck.EMPTY

    def test_refusal(self):
        assert check_completion("I cannot do that.") is CompletionCheck.REFUSAL

    def test_long_refusal_phrase_is_complete(self):
        text = "I cannot stress enough that the code is fine. " + "The file main.py " * 20
        assert check_completion(text) is CompletionCheck.COMPLETE

    def test_too_short(self):
        assert check_completion("Okay.") is CompletionCheck.TOO_SHORT

    def test_short_with_evidence(self):
        assert check_completion("I fixed the bug in main.py.") is CompletionCheck.COMPLETE

    def test_long_answer_complete(self):
        assert check_completion("Sure thing. " * 40) is CompletionCheck.COMPLETE

    def test_incomplete_property(self):
        assert CompletionCheck.EMPTY.incomplete
        assert not CompletionCheck.COMPLETE.incomplete

    def test_encouragement_per_kind(self):
        for check in (CompletionCheck.EMPTY, CompletionCheck.REFUSAL, CompletionCheck.TOO_SHORT):
            assert encouragement(check) == ENCOURAGEMENTS[check]
