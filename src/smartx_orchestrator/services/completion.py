"""Text completion clients used by worker transforms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from smartx_orchestrator.errors import (
    CompletionRejectedError,
    CompletionTransientError,
    MalformedGenerationResponse,
)
from smartx_orchestrator.services.failure_classifier import classify_completion_failure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4-turbo"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    """Per-call overrides; unset fields fall back to client defaults."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class CompletionService(Protocol):
    def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        """Return completion text.

        Raises `CompletionTransientError` for retryable failures,
        `CompletionRejectedError` for permanent ones and
        `MalformedGenerationResponse` when the reply has no usable text.
        """


class HttpCompletionService:
    """OpenAI-compatible chat completions client over httpx."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        options = options or CompletionOptions()
        body = {
            "model": options.model or self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": (
                options.temperature if options.temperature is not None else self.temperature
            ),
            "max_tokens": options.max_tokens or self.max_tokens,
        }
        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.TimeoutException as error:
            logger.warning("Completion request timed out: %s", error)
            raise CompletionTransientError(f"timeout: {error}") from error
        except httpx.TransportError as error:
            logger.warning("Completion transport error: %s", error)
            raise CompletionTransientError(f"network error: {error}") from error

        if not response.is_success:
            message = f"HTTP {response.status_code}: {response.text[:500]}"
            classification = classify_completion_failure(
                status_code=response.status_code,
                message=message,
            )
            logger.warning(
                "Completion request failed (%s, rule=%s): %s",
                classification.kind.value,
                classification.matched_rule,
                message,
            )
            details = classification.to_event_details()
            if classification.retryable:
                raise CompletionTransientError(message, details=details)
            raise CompletionRejectedError(message, details=details)

        return _extract_text(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpCompletionService:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class EchoCompletionService:
    """Offline completion that returns a fixed reply, or the prompt itself."""

    def __init__(self, reply: str | None = None) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    def complete(
        self,
        prompt: str,
        options: CompletionOptions | None = None,  # noqa: ARG002
    ) -> str:
        self.prompts.append(prompt)
        return self.reply if self.reply is not None else prompt

    def close(self) -> None:
        return None


def _extract_text(response: httpx.Response) -> str:
    try:
        payload: Any = response.json()
    except ValueError as error:
        raise MalformedGenerationResponse("completion body is not JSON") from error
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as error:
        raise MalformedGenerationResponse("completion body has no message content") from error
    if not isinstance(content, str) or not content.strip():
        raise MalformedGenerationResponse("completion message content is empty")
    return content
