"""Tests for code-fence stripping, JSON repair and state report extraction."""

from questline.pipeline.parsing import (
    extract_json_object,
    extract_state_report,
    parse_json_response,
    strip_code_fences,
)


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("```\nplain\n```") == "plain"
    assert strip_code_fences("  no fences  ") == "no fences"


def test_parse_plain_json():
    assert parse_json_response('{"a": 1}') == {"a": 1}


def test_parse_fenced_json():
    assert parse_json_response('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}


def test_parse_without_repair_fails_on_prose():
    assert parse_json_response('Sure! {"a": 1} Hope that helps.') is None


def test_parse_with_repair_recovers_object():
    assert parse_json_response('Sure! {"a": {"b": 2}} Hope that helps.', repair=True) == {"a": {"b": 2}}


def test_parse_rejects_non_object():
    assert parse_json_response("[1, 2]") is None


def test_extract_json_object_ignores_braces_in_strings():
    raw = 'note {"text": "a } brace and \\" quote", "n": 1} trailing }'
    assert extract_json_object(raw) == {"text": 'a } brace and " quote', "n": 1}


def test_extract_json_object_unbalanced():
    assert extract_json_object('{"a": 1') is None
    assert extract_json_object("no braces") is None


class TestStateReport:
    def test_no_report(self):
        assert extract_state_report("You walk on.") == ("You walk on.", None)

    def test_report_removed_and_parsed(self):
        text = 'The door opens.\n---STATE_REPORT---{"gold": 5}---END_REPORT---'
        clean, report = extract_state_report(text)
        assert clean == "The door opens."
        assert report == {"gold": 5}

    def test_fenced_report(self):
        text = 'Story.\n---STATE_REPORT---\n```json\n{"hp": {"current": 3}}\n```\n---END_REPORT---'
        clean, report = extract_state_report(text)
        assert clean == "Story."
        assert report == {"hp": {"current": 3}}

    def test_every_block_removed(self):
        text = (
            "One.\n---STATE_REPORT---{\"gold\": 1}---END_REPORT---\n"
            "Two.\n---STATE_REPORT---{\"gold\": 2}---END_REPORT---"
        )
        clean, report = extract_state_report(text)
        assert "STATE_REPORT" not in clean
        assert "One." in clean and "Two." in clean
        assert report == {"gold": 1}

    def test_malformed_report_dropped(self):
        clean, report = extract_state_report("Story.---STATE_REPORT---{not json---END_REPORT---")
        assert clean == "Story."
        assert report is None

    def test_unclosed_report_hidden(self):
        clean, report = extract_state_report('Story.\n---STATE_REPORT---{"gold": 1}')
        assert clean == "Story."
        assert report is None

    def test_stray_end_delimiter_removed(self):
        clean, _ = extract_state_report("Story.---END_REPORT---")
        assert clean == "Story."
