from __future__ import annotations

from webrag.services.model_output import (
    extract_json_object,
    find_json_object_span,
    strip_code_fences,
)


def test_strip_code_fences_unwraps_json_block():
    raw = '```json\n{"enough": true}\n```'
    assert strip_code_fences(raw) == '{"enough": true}'


def test_strip_code_fences_leaves_plain_text():
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_find_span_ignores_braces_inside_strings():
    text = 'Sure! {"q": "a } tricky { value", "n": {"x": 1}} trailing'
    start, end = find_json_object_span(text)
    assert text[start:end] == '{"q": "a } tricky { value", "n": {"x": 1}}'


def test_find_span_handles_escaped_quotes():
    text = '{"q": "say \\"}\\" now"}'
    assert find_json_object_span(text) == (0, len(text))


def test_find_span_returns_none_when_unbalanced():
    assert find_json_object_span('{"a": {"b": 1}') is None
    assert find_json_object_span("no json here") is None


def test_extract_json_object_with_prose_and_fences():
    raw = 'Here you go:\n{"standalone": "x", "queries": ["a", "b"]}\nHope that helps.'
    assert extract_json_object(raw) == {"standalone": "x", "queries": ["a", "b"]}


def test_extract_json_object_skips_invalid_span():
    raw = "{not json} then {\"ok\": 1}"
    assert extract_json_object(raw) == {"ok": 1}


def test_extract_json_object_returns_none_for_garbage():
    assert extract_json_object("") is None
    assert extract_json_object("I cannot help with that.") is None
