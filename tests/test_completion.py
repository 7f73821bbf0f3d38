from __future__ import annotations

import json

import allure
import httpx
import pytest

from smartx_orchestrator.errors import (
    CompletionRejectedError,
    CompletionTransientError,
    MalformedGenerationResponse,
)
from smartx_orchestrator.services.completion import (
    CompletionOptions,
    EchoCompletionService,
    HttpCompletionService,
)

pytestmark = [
    allure.epic("Completion"),
    allure.feature("HTTP Completion Client"),
]


def _service(handler) -> HttpCompletionService:
    return HttpCompletionService(
        api_key="sk-test",
        base_url="https://llm.example.com/v1/",
        model="test-model",
        temperature=0.7,
        max_tokens=100,
        transport=httpx.MockTransport(handler),
    )


def _reply(content: object) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_complete_posts_chat_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_reply("hello"))

    with _service(handler) as service:
        text = service.complete("Say hello", CompletionOptions(temperature=0.0, max_tokens=5))

    assert text == "hello"
    assert str(seen[0].url) == "https://llm.example.com/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(seen[0].content)
    assert body == {
        "model": "test-model",
        "messages": [{"role": "user", "content": "Say hello"}],
        "temperature": 0.0,
        "max_tokens": 5,
    }


@pytest.mark.parametrize(
    ("status_code", "text", "error_type"),
    [
        (429, "rate limit reached", CompletionTransientError),
        (503, "upstream", CompletionTransientError),
        (401, "invalid api key", CompletionRejectedError),
        (429, "insufficient_quota", CompletionRejectedError),
        (400, "bad request", CompletionRejectedError),
    ],
)
def test_http_errors_are_classified(status_code: int, text: str, error_type: type) -> None:
    service = _service(lambda _request: httpx.Response(status_code, text=text))

    with pytest.raises(error_type, match=f"HTTP {status_code}"):
        service.complete("prompt")
    service.close()


def test_rejection_carries_classifier_details() -> None:
    service = _service(lambda _request: httpx.Response(401, text="nope"))

    with pytest.raises(CompletionRejectedError) as caught:
        service.complete("prompt")
    service.close()

    assert caught.value.details == {
        "classifier_version": 1,
        "reason_code": "completion_access_or_auth",
        "matched_rule": "auth_status_code",
        "matched_pattern": None,
    }


def test_transport_failures_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    service = _service(handler)

    with pytest.raises(CompletionTransientError, match="network error"):
        service.complete("prompt")
    service.close()


def test_timeouts_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    service = _service(handler)

    with pytest.raises(CompletionTransientError, match="timeout"):
        service.complete("prompt")
    service.close()


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json=_reply("   ")),
        httpx.Response(200, json=_reply(None)),
    ],
)
def test_unusable_bodies_are_malformed(response: httpx.Response) -> None:
    service = _service(lambda _request: response)

    with pytest.raises(MalformedGenerationResponse):
        service.complete("prompt")
    service.close()


def test_echo_service_returns_prompt_or_fixed_reply() -> None:
    echo = EchoCompletionService()
    fixed = EchoCompletionService(reply='{"text": "ok"}')

    assert echo.complete("ping") == "ping"
    assert fixed.complete("ping") == '{"text": "ok"}'
    assert echo.prompts == ["ping"]
