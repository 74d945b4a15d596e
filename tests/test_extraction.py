import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from surface.extraction import extract_payload  # noqa: E402


def test_fenced_block_wins() -> None:
    text = 'prefix ```json\n{"a":1}\n``` suffix'

    assert extract_payload(text) == '{"a":1}'


def test_fenced_block_without_language_tag() -> None:
    assert extract_payload("Here:\n```\n[1, 2]\n```") == "[1, 2]"


def test_brace_block_when_no_fence() -> None:
    assert extract_payload('some text {"b":2} more text') == '{"b":2}'


def test_nested_block_is_returned_whole() -> None:
    text = 'Result: {"outer": {"inner": [1, {"x": "}"}]}} trailing {"other": 1}'

    assert extract_payload(text) == '{"outer": {"inner": [1, {"x": "}"}]}}'


def test_plain_text_is_returned_unchanged() -> None:
    assert extract_payload("plain text, no braces") == "plain text, no braces"


def test_unbalanced_braces_fall_back_to_raw_text() -> None:
    text = "an opening { that never closes"

    assert extract_payload(text) == text


def test_inline_fence_keeps_its_first_word() -> None:
    assert extract_payload("```SELECT id FROM t```") == "SELECT id FROM t"


def test_inline_json_tag_is_dropped() -> None:
    assert extract_payload('Answer: ```json {"a": 1}```') == '{"a": 1}'


def test_language_tag_before_newline_is_dropped() -> None:
    assert extract_payload("```python\nprint(1)\n```") == "print(1)"


def test_inner_block_of_unclosed_outer_bracket() -> None:
    assert extract_payload('[ draft {"a": 1} and {"b": 2}') == '{"a": 1}'


def test_mismatched_closer_resets_scan() -> None:
    assert extract_payload('[1} then {"ok": true}') == '{"ok": true}'


def test_large_unbalanced_reply_is_scanned_quickly() -> None:
    openers = "[" * 200_000
    open_strings = '{"' * 100_000

    started = time.perf_counter()
    assert extract_payload(openers) == openers
    assert extract_payload(open_strings) == open_strings
    assert time.perf_counter() - started < 2.0
