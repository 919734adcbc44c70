"""Final parse of a completed model stream into a :class:`StructuredResponse`."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from ..errors import MalformedResponseError
from ..prompts import RESPONSE_SCHEMA
from .types import StructuredResponse

__all__ = ["parse_structured_response", "strip_code_fence", "MAX_SCHEMA_ERRORS"]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5
_VALIDATOR = Draft202012Validator(RESPONSE_SCHEMA)
_LEADING_FENCE_RE = re.compile(r"^```(?:json)?", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"```$")


def strip_code_fence(text: str) -> str:
    """Trim the text and remove a wrapping Markdown fence, tagged ``json`` or not."""

    stripped = text.strip()
    if _LEADING_FENCE_RE.match(stripped):
        stripped = _LEADING_FENCE_RE.sub("", stripped, count=1)
        stripped = _TRAILING_FENCE_RE.sub("", stripped.rstrip(), count=1)
    return stripped.strip()


def parse_structured_response(text: str | None) -> StructuredResponse:
    """Parse and validate the complete stream text.

    Raises:
        MalformedResponseError: empty text, invalid JSON, a non-object document,
            a schema violation or an unknown action type. There is no lenient
            fallback.
    """

    if not text or not text.strip():
        raise MalformedResponseError("Empty response from model", raw_text=text)

    body = strip_code_fence(text)
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        LOGGER.debug("Model response is not valid JSON: %s", exc)
        raise MalformedResponseError(f"Model returned invalid JSON format: {exc.msg}", raw_text=text) from exc

    if not isinstance(payload, dict):
        raise MalformedResponseError("Model response must be a JSON object", raw_text=text)

    problems = _schema_problems(_VALIDATOR.iter_errors(payload))
    if problems:
        raise MalformedResponseError("Model response does not match the schema: " + "; ".join(problems), raw_text=text)

    try:
        return StructuredResponse.from_dict(payload, raw_text=text)
    except (KeyError, ValueError) as exc:
        raise MalformedResponseError(f"Model response contains an invalid action: {exc}", raw_text=text) from exc


def _schema_problems(issues: Iterable[Any]) -> list[str]:
    problems: list[str] = []
    for issue in issues:
        path = "/".join(str(part) for part in issue.absolute_path)
        problems.append(f"{path}: {issue.message}" if path else issue.message)
        if len(problems) >= MAX_SCHEMA_ERRORS:
            break
    return problems
