"""Completion providers used for structured invoice extraction.

Each provider turns a prompt into raw response text. Rate limiting is
retried here with the provider-advertised delay; a rejected model id
falls back once to the provider's secondary model. Every other failure
surfaces as a ``ProviderError`` for the orchestrator to handle.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from invoice_intake.core.config import Settings

logger = logging.getLogger(__name__)

TEMPERATURE = 0.1
MAX_OUTPUT_TOKENS = 2048

_RETRY_DELAY = re.compile(r'"retryDelay":\s*"(\d+(?:\.\d+)?)s"')
_RATE_LIMIT_HINTS = ("quota", "rate limit", "rate_limit", "too many requests")


class ProviderError(Exception):
    def __init__(self, kind: str, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        prefix = f"{self.provider}: " if self.provider else ""
        return f"{prefix}{self.kind}: {self.message}"


class RateLimitedError(ProviderError):
    def __init__(
        self, message: str, provider: str = "", retry_after: float | None = None
    ) -> None:
        super().__init__("RateLimited", message, provider)
        self.retry_after = retry_after


class InvalidModelError(ProviderError):
    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__("InvalidModel", message, provider)


def _is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in _RATE_LIMIT_HINTS)


class CompletionProvider(ABC):
    name: str
    max_input_chars: int

    def __init__(
        self,
        api_key: str,
        model: str,
        fallback_model: str | None = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        rate_limit_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.fallback_model = fallback_model
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._rate_limit_delay = rate_limit_delay
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @abstractmethod
    async def _generate(self, prompt: str, model: str) -> str:
        """Send one completion request and return the response text."""

    async def aclose(self) -> None:
        return None

    async def complete(self, prompt: str) -> str:
        if not self.is_configured:
            raise ProviderError(
                "NotConfigured", f"{self.name} API key is not set", self.name
            )
        try:
            text = await self._complete_with_retry(prompt, self.model)
        except InvalidModelError:
            if not self.fallback_model or self.fallback_model == self.model:
                raise
            logger.warning(
                "Model rejected, trying fallback model",
                extra={
                    "provider": self.name,
                    "model": self.model,
                    "fallback_model": self.fallback_model,
                },
            )
            text = await self._complete_with_retry(prompt, self.fallback_model)
        if not text or not text.strip():
            raise ProviderError("EmptyResponse", "Empty response from provider", self.name)
        return text

    async def _complete_with_retry(self, prompt: str, model: str) -> str:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitedError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_delay,
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._generate(prompt, model)
        raise AssertionError("unreachable")  # pragma: no cover

    def _retry_delay(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return exc.retry_after
        return self._rate_limit_delay

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(
            "Provider rate limited, retrying",
            extra={
                "provider": self.name,
                "attempt": retry_state.attempt_number,
                "max_attempts": self._max_attempts,
                "delay_seconds": retry_state.upcoming_sleep,
            },
        )


class GeminiProvider(CompletionProvider):
    """Google Gemini via the ``generateContent`` REST endpoint."""

    name = "gemini"
    max_input_chars = 10000

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        fallback_model: str | None = "gemini-1.5-flash-8b",
        base_url: str = "https://generativelanguage.googleapis.com",
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, model, fallback_model, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _generate(self, prompt: str, model: str) -> str:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": TEMPERATURE,
                "topK": 1,
                "topP": 0.8,
                "maxOutputTokens": MAX_OUTPUT_TOKENS,
                "candidateCount": 1,
            },
        }
        try:
            response = await self._get_client().post(
                f"{self._base_url}/v1beta/models/{model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise ProviderError("Network", f"Gemini request failed: {exc}", self.name) from exc

        if not response.is_success:
            raise self._map_error(response)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Upstream", f"Gemini returned a non-JSON body: {exc}", self.name
            ) from exc
        if not isinstance(body, dict):
            raise ProviderError("Upstream", "Gemini returned an unexpected body", self.name)
        candidates = body.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(part.get("text", "")) for part in parts)

    def _map_error(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        detail = response.text
        try:
            detail = response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            pass
        message = f"HTTP {status}: {detail}"

        if status == 429 or _is_rate_limit_message(detail):
            match = _RETRY_DELAY.search(response.text)
            retry_after = float(match.group(1)) if match else None
            return RateLimitedError(message, self.name, retry_after)
        if status in (401, 403) or "api key" in detail.lower():
            return ProviderError("Auth", message, self.name)
        if status == 404 or (status == 400 and "model" in detail.lower()):
            return InvalidModelError(message, self.name)
        return ProviderError("Upstream", message, self.name)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class GroqProvider(CompletionProvider):
    """Groq via its OpenAI-compatible chat completions API."""

    name = "groq"
    max_input_chars = 12000

    def __init__(
        self,
        api_key: str,
        model: str = "llama-3.3-70b-versatile",
        fallback_model: str | None = "llama-3.1-8b-instant",
        base_url: str = "https://api.groq.com/openai/v1",
        client: openai.AsyncOpenAI | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, model, fallback_model, **kwargs)
        self._base_url = base_url
        self._client = client

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            # Retries are driven by CompletionProvider, not the SDK.
            self._client = openai.AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    async def _generate(self, prompt: str, model: str) -> str:
        try:
            completion = await self._get_client().chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                temperature=TEMPERATURE,
                max_tokens=MAX_OUTPUT_TOKENS,
                n=1,
            )
        except openai.RateLimitError as exc:
            raise RateLimitedError(
                str(exc), self.name, _retry_after_header(exc.response)
            ) from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderError("Auth", str(exc), self.name) from exc
        except openai.NotFoundError as exc:
            raise InvalidModelError(str(exc), self.name) from exc
        except openai.BadRequestError as exc:
            if "model" in str(exc).lower():
                raise InvalidModelError(str(exc), self.name) from exc
            raise ProviderError("Upstream", str(exc), self.name) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError("Network", str(exc), self.name) from exc
        except openai.APIStatusError as exc:
            if _is_rate_limit_message(str(exc)):
                raise RateLimitedError(str(exc), self.name) from exc
            raise ProviderError("Upstream", str(exc), self.name) from exc

        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


def _retry_after_header(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def build_providers(settings: Settings) -> dict[str, CompletionProvider]:
    common: dict[str, Any] = {
        "timeout": settings.provider_timeout_seconds,
        "max_attempts": settings.provider_max_attempts,
        "rate_limit_delay": settings.rate_limit_delay_seconds,
    }
    return {
        GeminiProvider.name: GeminiProvider(
            settings.gemini_api_key,
            model=settings.gemini_model,
            fallback_model=settings.gemini_fallback_model,
            base_url=settings.gemini_base_url,
            **common,
        ),
        GroqProvider.name: GroqProvider(
            settings.groq_api_key,
            model=settings.groq_model,
            fallback_model=settings.groq_fallback_model,
            base_url=settings.groq_base_url,
            **common,
        ),
    }
