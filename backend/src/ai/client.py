"""
Chat completion client for the rule assistant.

Owns the OpenAI SDK client, its configuration, and the retry policy for
transient API failures. Callers get plain completion text back.
"""
from typing import Optional

import openai
from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from src.lib.settings import settings
from src.lib.logging import get_logger

logger = get_logger(__name__)


# Transient OpenAI failures worth retrying
RETRYABLE_OPENAI_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIClient:
    """Configured chat completion access; the SDK client is built on first use."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        sdk_client: Optional[OpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.timeout_seconds = timeout_seconds or settings.openai_timeout_seconds
        self._sdk_client = sdk_client

    def is_available(self) -> bool:
        return self._sdk_client is not None or bool(self.api_key)

    def _client(self) -> OpenAI:
        if self._sdk_client is None:
            self._sdk_client = OpenAI(api_key=self.api_key, timeout=self.timeout_seconds, max_retries=0)
        return self._sdk_client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RETRYABLE_OPENAI_ERRORS),
        reraise=True,
    )
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 600,
    ) -> str:
        """
        Run one system + user chat completion and return the reply text.

        Retries up to 3 times with exponential backoff on transient failures;
        other openai.OpenAIError subclasses propagate immediately.
        """
        response = self._client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = (response.choices[0].message.content or "").strip()
        logger.debug(
            "OpenAI completion received",
            extra={"model": self.model, "response_length": len(content)},
        )
        return content


_client: Optional[OpenAIClient] = None


def get_openai_client() -> OpenAIClient:
    """Process-wide client, created lazily from settings."""
    global _client
    if _client is None:
        if not settings.openai_api_key:
            logger.warning("OpenAI API key not configured. AI features will be unavailable.")
        _client = OpenAIClient()
    return _client
