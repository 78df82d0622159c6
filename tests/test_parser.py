import json

import pytest

from quillqueue.parser import (
    PARSED_NONE,
    ParsedNone,
    ParsedOk,
    find_balanced,
    parse_blog,
    parse_outline,
    parse_titles,
    strip_code_fence,
)

# titles

def test_titles_plain_json_array():
    assert parse_titles('["Title 1", "Title 2", "Title 3"]') == ["Title 1", "Title 2", "Title 3"]

@pytest.mark.parametrize(
    "raw",
    [
        'Here are the titles:\n["Title 1", "Title 2"]',
        '["Title 1", "Title 2"]\nHope this helps!',
        'Sure! Here they are:\n["Title 1", "Title 2"]\nLet me know if you need more!',
        '```json\n["Title 1", "Title 2"]\n```',
    ],
)
def test_titles_array_wrapped_in_prose_or_fence(raw):
    assert parse_titles(raw) == ["Title 1", "Title 2"]

def test_titles_trimmed_and_empties_removed():
    assert parse_titles('["  Title 1  ", "", "Title 2   ", "   "]') == ["Title 1", "Title 2"]

def test_titles_bracket_inside_a_title_does_not_cut_the_array():
    raw = 'Titles: ["Why [Some] Diets Fail", "Ten ] Tips"] done'
    assert parse_titles(raw) == ["Why [Some] Diets Fail", "Ten ] Tips"]

def test_titles_numbered_list_fallback():
    assert parse_titles("1. First Title\n2. Second Title\n3. Third Title") == [
        "First Title",
        "Second Title",
        "Third Title",
    ]

def test_titles_parenthesis_numbering_fallback():
    assert parse_titles("1) Title One\n2) Title Two\n3) Title Three") == ["Title One", "Title Two", "Title Three"]

def test_titles_bullets_and_blank_lines_fallback():
    assert parse_titles("- Alpha\n\n* Beta\n   \n• Gamma\n") == ["Alpha", "Beta", "Gamma"]

def test_titles_bracket_lines_are_noise_in_fallback():
    assert parse_titles("[\nTitle 1\nTitle 2\n]") == ["Title 1", "Title 2"]

def test_titles_multi_char_bracket_lines_are_noise_too():
    assert parse_titles("[\nTitle 1\n],\n[]\nTitle 2") == ["Title 1", "Title 2"]

def test_titles_number_inside_title_is_kept():
    assert parse_titles("3 Ways to Sleep Better\n2. 7 Habits") == ["3 Ways to Sleep Better", "7 Habits"]

@pytest.mark.parametrize("raw", [None, ""])
def test_titles_absent_input_is_empty(raw):
    assert parse_titles(raw) == []

def test_titles_non_string_items_skipped():
    assert parse_titles('["A", {"x": 1}, null, 2024, "B"]') == ["A", "2024", "B"]

# outline / blog objects

def test_outline_plain_object():
    assert parse_outline('{"title": "Test", "structure": {}}') == ParsedOk({"title": "Test", "structure": {}})

def test_outline_prose_before_and_after():
    raw = 'Here is the outline:\n{"title": "Test", "seoKeywords": ["keyword1"]}\nHope this helps!'
    assert parse_outline(raw) == ParsedOk({"title": "Test", "seoKeywords": ["keyword1"]})

def test_outline_nested_object_round_trips():
    outline = {
        "title": "Test Title",
        "seoKeywords": ["keyword1", "keyword2"],
        "structure": {"introduction": {"summary": "Intro"}, "sections": [{"heading": "Section 1"}]},
    }
    assert parse_outline(json.dumps(outline)) == ParsedOk(outline)

def test_fenced_object_equals_unwrapped():
    body = '{"title": "Blog", "content": "Content"}'
    fenced = f"```json\n{body}\n```"
    assert parse_blog(fenced) == parse_blog(body) == ParsedOk({"title": "Blog", "content": "Content"})

def test_brace_inside_string_does_not_truncate():
    raw = 'Result: {"title": "Use } and { freely", "content": "a \\"quoted}\\" word"} trailing }'
    result = parse_blog(raw)
    assert isinstance(result, ParsedOk)
    assert result.value == {"title": "Use } and { freely", "content": 'a "quoted}" word'}

def test_empty_object_is_a_result_not_none():
    assert parse_blog("{}") == ParsedOk({})

@pytest.mark.parametrize("fn", [parse_outline, parse_blog])
def test_none_input_is_parsed_none(fn):
    assert fn(None) is PARSED_NONE

@pytest.mark.parametrize(
    "raw",
    [
        "This is not valid JSON at all",
        '{"title": "unterminated"',
        '{"title": bad json}',
        '["an", "array"]',
        "",
    ],
)
def test_unextractable_object_is_parsed_none(raw, caplog):
    result = parse_outline(raw)
    assert isinstance(result, ParsedNone)
    assert not result

def test_parse_failure_is_logged(caplog):
    with caplog.at_level("WARNING", logger="quillqueue.parser"):
        parse_blog("just prose")
    assert any("could not extract" in r.getMessage() for r in caplog.records)

def test_parsed_none_is_a_singleton():
    assert ParsedNone() is PARSED_NONE

# helpers

def test_find_balanced_unclosed_returns_none():
    assert find_balanced('{"a": {"b": 1}', "{", "}") is None

def test_find_balanced_handles_escaped_quote():
    assert find_balanced('x {"a": "\\"}"} y', "{", "}") == '{"a": "\\"}"}'

def test_strip_code_fence_without_language():
    assert strip_code_fence("```\n{}\n```") == "{}"

def test_strip_code_fence_leaves_plain_text():
    assert strip_code_fence('  {"a": 1} ') == '{"a": 1}'
