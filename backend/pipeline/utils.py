"""Best-effort JSON extraction from model replies."""

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from pipeline.errors import AdvisorResponseMalformedError

ModelT = TypeVar("ModelT", bound=BaseModel)

PREVIEW_CHARS = 300

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Top-level balanced ``{...}`` spans, string- and escape-aware."""
    candidates: list[str] = []
    n = len(text)
    start = 0

    while start < n:
        if text[start] != "{":
            start += 1
            continue

        depth = 0
        in_string = False
        escaped = False
        end_found = -1

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
                continue

            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end_found = end
                    break

        if end_found == -1:
            start += 1
            continue
        candidates.append(text[start : end_found + 1])
        start = end_found + 1

    return candidates


def extract_json(text: str) -> dict[str, Any] | None:
    """Extract a JSON object from a reply that may contain extra text.

    Tries, in order: the whole text, each fenced code block, then every
    top-level balanced ``{...}`` span. Returns the first candidate that
    parses to an object, or None.
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    # 1) Pure JSON response.
    parsed = try_parse(text.strip())
    if parsed is not None:
        return parsed

    # 2) JSON within fenced blocks.
    for match in _FENCE_PATTERN.finditer(text):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed

    # 3) Balanced object extraction from free-form response.
    for candidate in _extract_balanced_json_objects(text):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def decode_structured(text: str, model: type[ModelT]) -> ModelT:
    """Extract a JSON object from ``text`` and validate it into ``model``.

    Raises:
        AdvisorResponseMalformedError: No JSON object found, or it does not
            match the expected shape. Carries a bounded preview of the reply.
    """
    data = extract_json(text)
    if data is None:
        raise AdvisorResponseMalformedError(
            f"Could not parse a JSON object from the model reply: {preview(text)}",
            preview=preview(text),
        )
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise AdvisorResponseMalformedError(
            f"Model reply JSON has an unexpected shape ({e.error_count()} errors): {preview(text)}",
            preview=preview(text),
        ) from e
