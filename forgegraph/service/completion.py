from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from forgegraph.logging import get_logger

logger = get_logger(__name__)


class CompletionError(RuntimeError):
    """The completion API rejected a request or returned an unusable body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OpenAICompatibleProvider:
    """Chat-completions client for OpenAI-compatible APIs (Groq by default).

    Implements the ``complete(prompt, model, temperature)`` contract used by
    Model-Call steps. The prompt is sent as a single user message and the
    first choice's message content is returned. Retries and timeouts are
    left to the step's resilience policy.
    """

    DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_tokens: int = 1024,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Any) -> Optional["OpenAICompatibleProvider"]:
        """Provider built from settings, or None when no API key is configured."""
        if not settings.completion_api_key:
            return None
        return cls(
            settings.completion_api_key,
            base_url=settings.completion_base_url,
            max_tokens=settings.completion_max_tokens,
            timeout_seconds=settings.completion_timeout_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def complete(self, prompt: str, model: str, temperature: float) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": self.max_tokens,
        }
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "completion_api_error",
                model=model,
                status_code=e.response.status_code,
            )
            raise CompletionError(
                f"completion request failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError("completion response had no message content") from e
        usage = data.get("usage") or {}
        logger.info(
            "completion_succeeded",
            model=model,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )
        return content or ""

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def is_retryable_completion_error(exc: BaseException) -> bool:
    """Retry predicate: transport errors, rate limits and server errors."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, CompletionError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False
