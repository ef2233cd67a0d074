from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from clear_terms.core.config import settings
from clear_terms.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)


class ProviderFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class ProviderReply:
    text: str
    model: str


class AnalysisProvider:
    def analyze(
        self, prompt: str, models: Sequence[str], api_key: str | None
    ) -> ProviderReply:  # pragma: no cover
        raise NotImplementedError


class GeminiProvider(AnalysisProvider):
    """
    Google Gemini ``generateContent`` over httpx.

    Models are tried in order; the first one that produces text wins and earlier
    failures are only logged. ``ProviderFailure`` is raised once every model failed.
    """

    generation_config: dict[str, Any] = {
        "temperature": 0.2,
        "topP": 0.8,
        "topK": 40,
        "maxOutputTokens": 2048,
    }

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self._timeout = float(timeout or settings.provider_timeout_seconds)
        self._client = client or httpx.Client(timeout=self._timeout, follow_redirects=True)

    def analyze(self, prompt: str, models: Sequence[str], api_key: str | None) -> ProviderReply:
        if not api_key:
            raise ProviderFailure("Provider API key is not configured")
        if not models:
            raise ProviderFailure("No provider models configured")

        last_error: Exception | None = None
        for model in models:
            start = time.monotonic()
            try:
                text = self._generate(model=model, prompt=prompt, api_key=api_key)
            except (httpx.HTTPError, ValueError, ProviderFailure) as e:
                last_error = e
                log_event(
                    logger,
                    "provider.model.failure",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e)[:300],
                    duration_ms=monotonic_ms(start),
                )
                continue
            log_event(
                logger,
                "provider.model.success",
                model=model,
                response_chars=len(text),
                duration_ms=monotonic_ms(start),
            )
            return ProviderReply(text=text, model=model)

        raise ProviderFailure(f"All models failed. Last error: {last_error}") from last_error

    def _generate(self, *, model: str, prompt: str, api_key: str) -> str:
        url = f"{self._base_url}/models/{model}:generateContent"
        resp = self._client.post(
            url,
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": self.generation_config,
            },
            timeout=self._timeout,
        )
        if not resp.content:
            raise ProviderFailure(f"Empty response from provider (HTTP {resp.status_code})")
        data = resp.json()
        if resp.is_error:
            raise ProviderFailure(_error_message(data) or f"HTTP {resp.status_code}")

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = None
        if not isinstance(text, str) or not text.strip():
            raise ProviderFailure("Provider returned no generated text")
        return text


def _error_message(data: Any) -> str | None:
    # {"error": {"message": ...}} from the API, a bare string from some proxies
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else None
    if isinstance(error, str) and error:
        return error
    return None
