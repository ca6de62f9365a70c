"""
Language Model Client

A thin client for an OpenAI-compatible chat-completions API (OpenRouter by
default). It sends messages and returns the decoded response body. It does
NOT interpret the reply; that is command_agent.py's job.

RETRY POLICY (tenacity):
- 5xx and 429 responses are retried, other 4xx are not
- Network errors are retried
- Backoff starts at initial_retry_delay_seconds and doubles
- A 429's Retry-After header (seconds or HTTP-date) replaces the backoff
- A timeout is NOT retried; it surfaces as LLMTimeoutError
- A non-JSON Content-Type fails immediately (an HTML error page is never
  parsed as a model reply)

CRITICAL: Cancellation of the calling task propagates. tenacity never
retries asyncio.CancelledError.
"""

import asyncio
import math
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from ledger_assistant.config import LLMSettings, get_settings

logger = structlog.get_logger()


# =============================================================================
# EXCEPTIONS
# =============================================================================

class LLMError(Exception):
    """Base exception for model provider errors."""
    pass


class LLMConfigError(LLMError):
    """AI features are not configured (no API key)."""
    pass


class UpstreamAPIError(LLMError):
    """The provider answered with an error status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        retry_after: Optional[float] = None,
        error_type: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.error_type = error_type
        self.error_code = error_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429


class UnexpectedContentTypeError(LLMError):
    """The provider answered with something other than JSON."""

    def __init__(self, content_type: Optional[str], status_code: int):
        super().__init__(f"Unexpected Content-Type: {content_type or 'none'}")
        self.content_type = content_type
        self.status_code = status_code


class LLMTimeoutError(LLMError):
    """A single attempt exceeded the configured timeout."""
    pass


class LLMNetworkError(LLMError):
    """The request never got a response (connection, DNS, protocol)."""
    pass


# =============================================================================
# HELPERS
# =============================================================================

def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("7") or an HTTP-date. Returns None when absent
    or unparseable; dates in the past give 0.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = time.time() if now is None else now
    return max(0.0, when.timestamp() - current)


def extract_message_content(response: dict[str, Any]) -> str:
    """
    Pull the assistant text out of a chat-completions response.

    Raises:
        LLMError: If the response carries no message content
    """
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not content or not isinstance(content, str):
        raise LLMError("Empty response from model")
    return content


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamAPIError):
        return exc.is_retryable
    return isinstance(exc, LLMNetworkError)


# =============================================================================
# CLIENT
# =============================================================================

class LLMClient:
    """
    Chat-completions client with bounded retries.

    Usage:
        client = create_llm_client()
        response = await client.chat([
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ])
    """

    def __init__(
        self,
        settings: LLMSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            settings: Provider configuration; api_key must be set
            http_client: Shared client (tests pass one with a MockTransport).
                         When None, a client is opened per call.
            sleep: Backoff sleep, replaceable in tests
        """
        if not settings.api_key:
            raise LLMConfigError(
                "AI features are not configured. Please set OPENROUTER_API_KEY."
            )
        self._settings = settings
        self._http_client = http_client
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self._settings.model

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._settings.api_key}",
            "HTTP-Referer": self._settings.referer,
            "X-Title": self._settings.app_title,
        }

    def _backoff(self, retry_state: RetryCallState) -> float:
        """Exponential backoff, unless a 429 told us how long to wait."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, UpstreamAPIError) and exc.is_rate_limited and exc.retry_after is not None:
            return exc.retry_after
        return self._settings.initial_retry_delay_seconds * (2 ** (retry_state.attempt_number - 1))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "llm_retry",
            attempt=retry_state.attempt_number,
            error_type=type(exc).__name__ if exc else None,
            status_code=getattr(exc, "status_code", None),
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def chat(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        """
        Send one chat-completions request, retrying per the policy above.

        Returns:
            The decoded JSON response body

        Raises:
            UpstreamAPIError: Terminal status, or retries exhausted
            UnexpectedContentTypeError: Response was not JSON
            LLMTimeoutError: An attempt timed out
            LLMNetworkError: Network failures outlasted the retries
        """
        payload = {
            "model": self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }

        if self._http_client is not None:
            return await self._chat_with_retries(self._http_client, payload)

        async with httpx.AsyncClient() as client:
            return await self._chat_with_retries(client, payload)

    async def _chat_with_retries(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(client, payload)

        raise LLMError("Max retries exceeded")

    async def _send(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """One attempt, bounded by timeout_seconds."""
        timeout = self._settings.timeout_seconds
        try:
            response = await asyncio.wait_for(
                client.post(
                    self._settings.api_url,
                    headers=self._headers(),
                    json=payload,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise LLMTimeoutError(f"Model request timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise LLMNetworkError(f"Model request failed: {type(e).__name__}") from e

        # Checked before the status so an HTML error page is never parsed
        content_type = response.headers.get("content-type")
        if not content_type or "application/json" not in content_type:
            raise UnexpectedContentTypeError(content_type, response.status_code)

        if response.is_error:
            raise self._error_from_response(response)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamAPIError(
                "Provider returned malformed JSON", response.status_code
            ) from e

    @staticmethod
    def _error_from_response(response: httpx.Response) -> UpstreamAPIError:
        try:
            body = response.json()
        except ValueError:
            body = {}

        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}

        retry_after = None
        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))

        return UpstreamAPIError(
            error.get("message") or f"HTTP {response.status_code}",
            response.status_code,
            retry_after=retry_after,
            error_type=error.get("type"),
            error_code=str(error["code"]) if error.get("code") is not None else None,
        )


def create_llm_client(
    settings: Optional[LLMSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> LLMClient:
    """
    Build a client from configuration.

    Raises:
        LLMConfigError: If no API key is configured
    """
    return LLMClient(settings or get_settings().llm, http_client=http_client)
