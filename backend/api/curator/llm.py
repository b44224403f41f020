"""
OpenAI provider helpers: text generation plus the retry policy shared with
the embedding client.

Providers are unreliable by contract. Every call runs with a bounded timeout
and is retried with exponential backoff; once the attempt budget is spent the
caller gets a TransientError, which fails the work item through the normal
retry path.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

from curator.config import Settings
from curator.errors import TransientError

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
    TimeoutError,
    ConnectionError,
)


def with_retries(
    fn: Callable[[], T],
    what: str,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    retryable: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
) -> T:
    """
    Runs `fn` up to `max_attempts` times, sleeping base_delay * 2**attempt
    between tries. Raises TransientError when every attempt failed.
    """
    last: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except retryable as e:
            last = e
            if attempt == max_attempts - 1:
                break
            delay = base_delay * (2 ** attempt)
            log.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                what, attempt + 1, max_attempts, delay, e,
            )
            sleep(delay)
    raise TransientError(f"{what} failed after {max_attempts} attempt(s): {last}") from last


class LLMClient:
    """`generate(prompt) -> text` over the OpenAI chat completions API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[OpenAI] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self.model = self.settings.openai_model
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.settings.openai_api_key or None,
                timeout=self.settings.provider_timeout_sec,
                max_retries=0,
            )
        return self._client

    def generate(self, prompt: str, system: Optional[str] = None, temperature: float = 0.3) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        def _call() -> str:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                timeout=self.settings.provider_timeout_sec,
            )
            return resp.choices[0].message.content or ""

        return with_retries(
            _call,
            what=f"generate({self.model})",
            max_attempts=self.settings.provider_max_attempts,
            base_delay=self.settings.provider_backoff_sec,
            sleep=self._sleep,
        )
