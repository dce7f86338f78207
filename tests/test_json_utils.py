import pytest

from utils.json_utils import extract_json_from_text, safe_json_loads, truncate_for_log


def test_fenced_block_preferred_over_surrounding_prose():
    reply = 'Notes {not json}\n```json\n{"overallScore": 8}\n```\nThanks!'

    assert extract_json_from_text(reply) == '{"overallScore": 8}'


def test_skips_bracketed_prose_before_real_object():
    reply = 'Scores [see below]: {"scores": {"pacing": 6}} and done.'

    assert safe_json_loads(reply, expected=dict) == {"scores": {"pacing": 6}}


@pytest.mark.parametrize("reply", ["", "   ", "no structure here", "{broken", None])
def test_unparseable_replies_yield_none(reply):
    assert safe_json_loads(reply) is None


def test_expected_type_mismatch_yields_none():
    assert safe_json_loads("[1, 2, 3]", expected=dict) is None
    assert safe_json_loads("[1, 2, 3]", expected=list) == [1, 2, 3]


def test_truncate_for_log():
    assert truncate_for_log("abcdef", limit=3) == "abc..."
    assert truncate_for_log("abc", limit=3) == "abc"
    assert truncate_for_log(None) == ""
