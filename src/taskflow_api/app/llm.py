"""Text generation backend for the AI actions.

Only the OpenAI chat completions REST endpoint is supported. When no API key
is configured `build_llm_adapter` returns None and text actions report the
backend as unavailable.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from .settings import Settings

logger = logging.getLogger(__name__)

# Failures worth another attempt; anything else propagates on first sight.
RETRYABLE_ERRORS = (TimeoutError, ValueError, error.URLError)


class LLMAdapter(Protocol):
    def generate_text(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
    ) -> str: ...


def extract_text(completion: dict[str, Any]) -> str:
    """Pull the assistant text out of a chat completion body.

    `content` is either a plain string or a list of typed parts; text parts
    are concatenated. Raises ValueError when nothing usable is present.
    """
    choices = completion.get("choices") or []
    if not choices:
        raise ValueError("OpenAI response did not contain choices")
    content = (choices[0].get("message") or {}).get("content", "")
    if isinstance(content, list):
        content = "".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    if isinstance(content, str) and content.strip():
        return content
    raise ValueError("OpenAI response content could not be parsed as text")


class OpenAIChatCompletionsAdapter:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        trace: bool = False,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.trace = trace

    def generate_text(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        timeout_s: float,
    ) -> str:
        body = json.dumps(
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            }
        ).encode("utf-8")

        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return extract_text(self._post(body, timeout_s))
            except RETRYABLE_ERRORS as exc:
                logger.warning(
                    "llm event=request_failed attempt=%d/%d model=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc,
                )
                if attempt == attempts:
                    raise
                if self.backoff_s:
                    time.sleep(self.backoff_s)
        raise RuntimeError("unreachable")

    def _post(self, body: bytes, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=self.endpoint,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        if self.trace:
            logger.info("llm event=request model=%s url=%s", self.model, self.endpoint)
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace") if exc.fp else exc.reason
            # Keep the response body in the retryable error.
            raise ValueError(f"OpenAI API request failed: {exc.code} {detail}") from exc
        return json.loads(raw)


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    if settings.llm_provider.lower() != "openai":
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        trace=settings.llm_trace,
    )
