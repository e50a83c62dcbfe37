"""Thin Gemini wrapper shared by the classifier, decomposer, planner and responder."""

from __future__ import annotations

import json as json_module
from typing import Any, Optional

from google.genai import types

from .config import AppConfig
from .errors import ConfigurationError, UpstreamProviderError
from .logger import LOGGER
from .retry import RetryPolicy, default_retry_policy


class GeminiModel:
    """One Gemini model bound to a retry policy.

    ``generate_json`` asks for ``application/json`` output and parses it;
    ``generate_text`` returns the raw text. Both raise
    ``UpstreamProviderError`` once the retry policy is exhausted.
    """

    def __init__(
        self,
        model: str,
        client: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None,
        temperature: float = 0.0,
    ):
        self.model = model
        self._client = client
        self.retry_policy = retry_policy or default_retry_policy()
        self.temperature = temperature

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AppConfig.get().client
        return self._client

    def _generate(self, prompt: str, response_mime_type: Optional[str]) -> str:
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            response_mime_type=response_mime_type,
        )
        response = self.client.models.generate_content(
            model=self.model,
            contents=prompt,
            config=config,
        )
        text = response.text or ""
        if not text.strip():
            raise UpstreamProviderError(self.model, "empty response")
        return text

    def generate_json(self, prompt: str) -> Any:
        def _call() -> Any:
            text = self._generate(prompt, "application/json")
            try:
                return json_module.loads(text)
            except json_module.JSONDecodeError as exc:
                raise UpstreamProviderError(self.model, f"malformed JSON: {exc}", exc) from exc

        return self._run(_call, "json")

    def generate_text(self, prompt: str) -> str:
        return self._run(lambda: self._generate(prompt, None), "text")

    def _run(self, func, kind: str) -> Any:
        try:
            return self.retry_policy.call(func, label=f"{self.model}:{kind}")
        except (ConfigurationError, UpstreamProviderError):
            raise
        except Exception as exc:
            LOGGER.warning("GeminiModel [%s] %s call failed: %s", self.model, kind, exc)
            raise UpstreamProviderError(self.model, str(exc), exc) from exc


__all__ = ["GeminiModel"]
