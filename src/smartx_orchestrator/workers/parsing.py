"""Best-effort JSON recovery from completion text with documented fallbacks."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

PARSER_VERSION = "v1"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(slots=True)
class ParsedOutput:
    """Parsed worker document and how it was obtained."""

    document: dict[str, Any]
    parser: str
    used_fallback: bool
    warnings: list[str] = field(default_factory=list)


def parse_json_object(text: str) -> tuple[dict[str, Any], str] | None:
    """Find a JSON object in text: whole body, fenced block, or outermost braces."""

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct, "json_direct"

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload, "json_fenced"

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    payload = _try_load_dict(stripped[start : end + 1])
    if payload is None:
        return None
    return payload, "json_slice"


def parse_or_fallback(
    text: str | None,
    *,
    required_keys: tuple[str, ...],
    fallback: Callable[[str], dict[str, Any]],
    fallback_warning: str,
) -> ParsedOutput:
    """Parse completion text or substitute the worker's fallback document.

    `None` text means the completion service reported a malformed response.
    """

    if text is None:
        return ParsedOutput(
            document=fallback(""),
            parser="fallback",
            used_fallback=True,
            warnings=[fallback_warning, "Completion service returned a malformed response"],
        )

    parsed = parse_json_object(text)
    if parsed is None:
        return ParsedOutput(
            document=fallback(text),
            parser="fallback",
            used_fallback=True,
            warnings=[fallback_warning, "Completion output was not valid JSON"],
        )

    document, parser = parsed
    missing = [key for key in required_keys if key not in document]
    if missing:
        return ParsedOutput(
            document=fallback(text),
            parser="fallback",
            used_fallback=True,
            warnings=[
                fallback_warning,
                f"Completion output missing required keys: {', '.join(missing)}",
            ],
        )
    return ParsedOutput(document=document, parser=parser, used_fallback=False)


def coerce_confidence(value: object, *, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return default
    return max(0.0, min(1.0, float(value)))


def coerce_str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
