"""Strict validation of the classifier's raw text into a triage result.

The classifier is untrusted: its text is unwrapped from optional markdown
code fences, parsed as JSON and checked field by field. Either a complete
``TriageResult`` comes back or an error is raised; nothing partial escapes.
"""

from __future__ import annotations

import json
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors import MalformedOutputError, SchemaIssue, SchemaViolationError

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```$", re.IGNORECASE)


class TriageResult(BaseModel):
    # Only the camelCase key is accepted from the classifier.
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    category: Literal["BILLING", "TECHNICAL", "FEATURE_REQUEST"]
    urgency: Literal["HIGH", "MEDIUM", "LOW"]
    sentiment_score: int = Field(alias="sentimentScore", ge=1, le=10)
    draft: str = Field(min_length=1)

    @field_validator("sentiment_score", mode="before")
    @classmethod
    def _integral_float(cls, value: object) -> object:
        # JSON has one number type, so 3.0 is the integer 3. Bools and strings stay invalid.
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("draft")
    @classmethod
    def _draft_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("draft must not be blank")
        return value


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    text = _LEADING_FENCE.sub("", text)
    text = _TRAILING_FENCE.sub("", text)
    return text.strip()


def _issue_path(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc)


def parse_triage_response(raw: str) -> TriageResult:
    cleaned = strip_code_fences(raw or "")
    if not cleaned:
        raise MalformedOutputError(cleaned, reason="an empty response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(cleaned) from exc
    if not isinstance(parsed, dict):
        raise MalformedOutputError(cleaned, reason="JSON that is not an object")

    try:
        return TriageResult.model_validate(parsed)
    except ValidationError as exc:
        issues = [
            SchemaIssue(path=_issue_path(error["loc"]), reason=error["msg"])
            for error in exc.errors()
        ]
        raise SchemaViolationError(issues) from exc
