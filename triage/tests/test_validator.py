from __future__ import annotations

import json

import pytest

from core.errors import MalformedOutputError, SchemaViolationError
from services.validator import parse_triage_response, strip_code_fences

VALID = {
    "category": "BILLING",
    "urgency": "HIGH",
    "sentimentScore": 2,
    "draft": "We are sorry about the double charge and have issued a refund.",
}


def test_plain_json_is_accepted() -> None:
    result = parse_triage_response(json.dumps(VALID))

    assert result.category == "BILLING"
    assert result.urgency == "HIGH"
    assert result.sentiment_score == 2
    assert result.draft.startswith("We are sorry")


def test_fenced_json_is_unwrapped() -> None:
    raw = '```json\n{"category":"TECHNICAL","urgency":"LOW","sentimentScore":7,"draft":"Thanks!"}\n```'

    result = parse_triage_response(raw)

    assert result.category == "TECHNICAL"
    assert result.urgency == "LOW"
    assert result.sentiment_score == 7
    assert result.draft == "Thanks!"


def test_strip_code_fences_handles_bare_fence() -> None:
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_extra_keys_are_ignored() -> None:
    result = parse_triage_response(json.dumps({**VALID, "confidence": 0.9}))
    assert result.category == "BILLING"


def test_out_of_range_sentiment_is_a_schema_violation() -> None:
    with pytest.raises(SchemaViolationError) as info:
        parse_triage_response(json.dumps({**VALID, "sentimentScore": 11}))

    assert info.value.fields == ["sentimentScore"]
    assert info.value.retryable is True
    assert str(info.value).startswith("LLM response validation failed: sentimentScore:")


def test_every_violation_is_reported() -> None:
    bad = {"category": "SHIPPING", "urgency": "HIGH", "sentimentScore": 5}

    with pytest.raises(SchemaViolationError) as info:
        parse_triage_response(json.dumps(bad))

    assert set(info.value.fields) == {"category", "draft"}


@pytest.mark.parametrize("score", [3.5, "3", True])
def test_sentiment_must_be_a_real_integer(score: object) -> None:
    with pytest.raises(SchemaViolationError):
        parse_triage_response(json.dumps({**VALID, "sentimentScore": score}))


def test_blank_draft_is_rejected() -> None:
    with pytest.raises(SchemaViolationError) as info:
        parse_triage_response(json.dumps({**VALID, "draft": "   "}))
    assert info.value.fields == ["draft"]


def test_non_json_is_malformed_with_snippet() -> None:
    raw = "Sure! Here is the triage: " + "x" * 500

    with pytest.raises(MalformedOutputError) as info:
        parse_triage_response(raw)

    assert len(info.value.snippet) == 200
    assert str(info.value).startswith("LLM returned invalid JSON: Sure! Here is the triage:")
    assert info.value.retryable is True


@pytest.mark.parametrize("raw", ["", "   ", "```json\n```", "[1, 2, 3]", '"just a string"'])
def test_empty_or_non_object_output_is_malformed(raw: str) -> None:
    with pytest.raises(MalformedOutputError):
        parse_triage_response(raw)


def test_integral_float_sentiment_is_accepted() -> None:
    result = parse_triage_response('{"category":"BILLING","urgency":"HIGH","sentimentScore":3.0,"draft":"x"}')

    assert result.sentiment_score == 3
    assert isinstance(result.sentiment_score, int)


def test_snake_case_sentiment_key_is_not_accepted() -> None:
    with pytest.raises(SchemaViolationError) as info:
        parse_triage_response('{"category":"BILLING","urgency":"HIGH","sentiment_score":3,"draft":"x"}')

    assert info.value.fields == ["sentimentScore"]
