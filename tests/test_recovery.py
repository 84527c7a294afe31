# tests/test_recovery.py
import json

import pytest

from parsing import (
    RecoveryTier,
    extract_json_candidate,
    find_brace_candidates,
    parse_critique,
    parse_revision,
    recover_json,
    recover_structured,
    strip_code_fences,
    strip_double_braces,
)

LONG_PROSE = (
    "The rain had not stopped for three days, and Mara had stopped counting the "
    "hours she spent waiting by the lighthouse window for a ship that never came."
)


def test_scenario_fenced_critique_with_commentary():
    text = (
        "Here's the result:\n```json\n"
        '{"summary":"ok","weaknesses":[{"aspect":"pacing","problem":"slow",'
        '"solutions":["cut scene"]}]}\n```\nHope that helps!'
    )
    result = parse_critique(text)

    assert result.tier is RecoveryTier.JSON
    critique = result.value
    assert critique.summary == "ok"
    assert len(critique.weaknesses) == 1
    weakness = critique.weaknesses[0]
    assert (weakness.aspect, weakness.problem, weakness.solutions) == (
        "pacing",
        "slow",
        ["cut scene"],
    )
    assert weakness.score is None


def test_scenario_double_wrapped_revision():
    text = (
        '{{"revisedText":"New chapter text here that is definitely over one hundred '
        'characters long to satisfy the threshold.","improvementSummary":'
        '"tightened pacing","changes":["cut scene"]}}'
    )
    data = recover_json(text)
    assert data["improvementSummary"] == "tightened pacing"

    result = parse_revision(text)
    assert result.tier is RecoveryTier.JSON
    assert result.value.revised_text.startswith("New chapter text here")
    assert result.value.improvement_summary == "tightened pacing"
    assert result.value.changes == ["cut scene"]


def test_longest_candidate_wins_over_truncated_object():
    text = (
        'Draft attempt: {"summary": "first", "weaknesses": [\n'
        "Final answer:\n"
        '{"summary": "complete", "weaknesses": [{"aspect": "tone", "problem": "flat"}]}'
    )
    data = recover_json(text)
    assert data["summary"] == "complete"


def test_longest_of_two_complete_candidates_selected():
    small = '{"a": 1}'
    large = '{"summary": "big", "weaknesses": []}'
    assert extract_json_candidate(f"first {small} then {large} end") == large


def test_fenced_block_is_unwrapped():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'


def test_stray_fences_are_stripped():
    assert strip_code_fences('{"a": 1}\n```') == '{"a": 1}'


def test_double_braces_need_both_ends():
    assert strip_double_braces('{{"a": 1}}') == '{"a": 1}'
    assert strip_double_braces('{"a": {"b": 1}}') == '{"a": {"b": 1}}'


def test_brace_scanner_ignores_braces_inside_strings():
    text = 'x {"text": "a } inside", "n": 1} y'
    assert find_brace_candidates(text) == ['{"text": "a } inside", "n": 1}']


def test_weaknesses_without_aspect_or_problem_are_discarded():
    payload = {
        "summary": "mixed",
        "weaknesses": [
            {"aspect": "pacing", "problem": "slow", "score": "6"},
            {"aspect": "", "problem": "missing aspect"},
            {"aspect": "dialogue"},
            "not a dict",
            {"aspect": "tone", "problem": "flat", "score": 14, "solutions": "one fix"},
        ],
    }
    critique = parse_critique(json.dumps(payload)).value
    assert [w.aspect for w in critique.weaknesses] == ["pacing", "tone"]
    assert critique.weaknesses[0].score == 6
    assert critique.weaknesses[1].score == 10
    assert critique.weaknesses[1].solutions == ["one fix"]


def test_empty_weakness_list_is_still_structured():
    result = parse_critique('{"summary": "Nothing to fix.", "weaknesses": []}')
    assert result.tier is RecoveryTier.JSON
    assert result.value.weaknesses == []


def test_unparseable_critique_falls_back_to_prose():
    text = "```\n" + LONG_PROSE + "\n```"
    result = parse_critique(text)
    assert result.tier is RecoveryTier.PROSE
    assert result.value is None
    assert result.text == LONG_PROSE


def test_labeled_revision_section_is_extracted():
    text = "I made some changes.\n\nRevised text:\n" + LONG_PROSE + "\n"
    result = parse_revision(text)
    assert result.tier is RecoveryTier.LABELED_LINE
    assert result.value.revised_text == LONG_PROSE


def test_japanese_labeled_revision_section_is_extracted():
    text = "改訂後の文章：\n" + LONG_PROSE
    result = parse_revision(text)
    assert result.tier is RecoveryTier.LABELED_LINE
    assert result.value.revised_text == LONG_PROSE


def test_truncated_json_field_is_recovered_and_unescaped():
    body = LONG_PROSE.replace(", and", ",\\n\\\"and\\\"")
    text = '{"revisedText": "' + body + '", "improvementSummary": "tight'
    result = parse_revision(text)
    assert result.tier is RecoveryTier.LABELED_LINE
    assert '\n"and"' in result.value.revised_text


def test_short_revised_text_in_json_triggers_text_fallback():
    text = (
        '{"revisedText": "too short", "improvementSummary": "x"}\n\n' + LONG_PROSE
    )
    result = parse_revision(text)
    assert result.tier is RecoveryTier.PROSE
    assert result.value.revised_text == LONG_PROSE


def test_raw_text_is_returned_when_nothing_else_works():
    text = "{broken"
    result = recover_structured(text)
    assert result.tier is RecoveryTier.RAW
    assert result.text == text


def test_accept_veto_moves_to_text_tiers():
    text = '{"kind": "other"}\n' + LONG_PROSE
    result = recover_structured(text, accept=lambda data: "summary" in data)
    assert result.tier is RecoveryTier.PROSE


@pytest.mark.parametrize(
    "text",
    [
        "x",
        "{",
        "}}{{",
        "```",
        '{"revisedText": ""}',
        "   \n\t  text with whitespace   ",
        '[1, 2, 3]',
        LONG_PROSE,
        "{" * 50 + "}" * 10,
    ],
)
def test_recovery_never_returns_empty_for_non_empty_input(text):
    assert recover_structured(text).text
    assert parse_critique(text).text
    assert parse_revision(text).text


@pytest.mark.parametrize("score", ["Infinity", "-Infinity", "NaN", "1e400", '"1e999"'])
def test_non_finite_scores_are_left_unscored(score):
    text = (
        '{"summary": "ok", "weaknesses": [{"aspect": "pacing", "problem": "slow", '
        f'"score": {score}, "solutions": ["cut scene"]}}]}}'
    )
    result = parse_critique(text)
    assert result.tier is RecoveryTier.JSON
    (weakness,) = result.value.weaknesses
    assert weakness.aspect == "pacing"
    assert weakness.score is None


def test_revised_text_of_exactly_minimum_length_is_not_accepted_as_json():
    revised = "x" * 100
    text = json.dumps({"revisedText": revised}) + "\n\n" + LONG_PROSE
    result = parse_revision(text)
    assert result.tier is RecoveryTier.PROSE
    assert result.value.revised_text == LONG_PROSE

    longer = json.dumps({"revisedText": revised + "y"}) + "\n\n" + LONG_PROSE
    assert parse_revision(longer).tier is RecoveryTier.JSON
