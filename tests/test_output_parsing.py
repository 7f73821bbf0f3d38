from __future__ import annotations

import allure

from smartx_orchestrator.workers.parsing import (
    coerce_confidence,
    coerce_str_list,
    parse_json_object,
    parse_or_fallback,
)

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Output Parsing & Fallbacks"),
]


def _fallback(raw: str) -> dict[str, object]:
    return {"text": raw.strip(), "fallback": True}


def test_parse_json_object_accepts_direct_fenced_and_embedded_json() -> None:
    assert parse_json_object('{"a": 1}') == ({"a": 1}, "json_direct")
    assert parse_json_object('Here:\n```json\n{"a": 2}\n```\nDone') == ({"a": 2}, "json_fenced")
    assert parse_json_object('Sure! {"a": 3} Hope it helps') == ({"a": 3}, "json_slice")


def test_parse_json_object_rejects_non_objects() -> None:
    assert parse_json_object("") is None
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("no braces here") is None
    assert parse_json_object("{broken json}") is None


def test_parse_or_fallback_keeps_valid_output() -> None:
    parsed = parse_or_fallback(
        '{"text": "hello"}',
        required_keys=("text",),
        fallback=_fallback,
        fallback_warning="fallback used",
    )

    assert parsed.document == {"text": "hello"}
    assert parsed.parser == "json_direct"
    assert not parsed.used_fallback
    assert parsed.warnings == []


def test_parse_or_fallback_on_plain_text() -> None:
    parsed = parse_or_fallback(
        "  just words  ",
        required_keys=("text",),
        fallback=_fallback,
        fallback_warning="fallback used",
    )

    assert parsed.document == {"text": "just words", "fallback": True}
    assert parsed.parser == "fallback"
    assert parsed.used_fallback
    assert parsed.warnings == ["fallback used", "Completion output was not valid JSON"]


def test_parse_or_fallback_on_missing_required_keys() -> None:
    parsed = parse_or_fallback(
        '{"other": 1}',
        required_keys=("text", "segments"),
        fallback=_fallback,
        fallback_warning="fallback used",
    )

    assert parsed.used_fallback
    assert parsed.warnings[1] == "Completion output missing required keys: text, segments"


def test_parse_or_fallback_on_malformed_response() -> None:
    parsed = parse_or_fallback(
        None,
        required_keys=("text",),
        fallback=_fallback,
        fallback_warning="fallback used",
    )

    assert parsed.document == {"text": "", "fallback": True}
    assert "malformed" in parsed.warnings[1]


def test_coercion_helpers() -> None:
    assert coerce_confidence(0.42, default=0.8) == 0.42
    assert coerce_confidence(7, default=0.8) == 1.0
    assert coerce_confidence(-1, default=0.8) == 0.0
    assert coerce_confidence("high", default=0.8) == 0.8
    assert coerce_confidence(True, default=0.8) == 0.8
    assert coerce_str_list([" a ", "", 3, None]) == ["a", "3", "None"]
    assert coerce_str_list("not a list") == []
