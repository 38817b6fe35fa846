"""Ollama chat client that fails over across a pool of API keys."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ollama import AsyncClient, ResponseError

from ..errors import (
    CredentialAuthError,
    CredentialError,
    CredentialQuotaError,
    CredentialRateLimited,
    GenerationEmptyResponse,
    GenerationTransientError,
)
from ..storage.settings import Settings
from .credentials import CredentialPool, FailureKind
from .retry import RetryPolicy

log = logging.getLogger(__name__)

Turn = dict[str, Any]


def turns_to_messages(turns: list[Turn], system: str | None = None) -> list[dict[str, str]]:
    """Map ``{role: user|model, parts: [{text}]}`` turns to chat messages."""
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    for turn in turns:
        role = "assistant" if turn.get("role") == "model" else "user"
        text = "\n".join(part.get("text", "") for part in turn.get("parts", []))
        messages.append({"role": role, "content": text})
    return messages


def classify_response_error(exc: ResponseError) -> Exception:
    """Translate a backend error into the generation error taxonomy."""
    message = str(exc.error or "").lower()
    status = exc.status_code
    if status in (401, 403) or "api key" in message or "unauthorized" in message:
        return CredentialAuthError(exc.error)
    if "quota" in message:
        return CredentialQuotaError(exc.error)
    if status == 429 or "rate limit" in message:
        return CredentialRateLimited(exc.error)
    return GenerationTransientError(exc.error)


def failure_kind(exc: CredentialError) -> FailureKind:
    if isinstance(exc, CredentialAuthError):
        return FailureKind.AUTH
    if isinstance(exc, CredentialQuotaError):
        return FailureKind.QUOTA
    if isinstance(exc, CredentialRateLimited):
        return FailureKind.RATE_LIMIT
    return FailureKind.OTHER


class GenerationClient:
    """Multi-key Ollama client.

    Each attempt picks the least-used healthy key, so a rate-limited key
    is skipped on the next attempt.

    Usage:
        client = GenerationClient(settings, CredentialPool(keys))
        reply = await client.generate(turns)
    """

    def __init__(
        self,
        settings: Settings,
        pool: CredentialPool,
        client_factory: Callable[[str], AsyncClient] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self.pool = pool
        self._client_factory = client_factory or self._make_client
        self._clients: dict[int, AsyncClient] = {}
        self._sleep = sleep

    def _make_client(self, secret: str) -> AsyncClient:
        return AsyncClient(
            host=self._settings.get("host"),
            headers={"Authorization": f"Bearer {secret}"},
        )

    def _client(self, index: int) -> AsyncClient:
        client = self._clients.get(index)
        if client is None:
            client = self._clients[index] = self._client_factory(self.pool.secret(index))
        return client

    async def generate(
        self,
        turns: list[Turn],
        max_retries: int | None = None,
        system: str | None = None,
    ) -> str:
        """Return the model's reply to *turns*.

        Raises GenerationExhausted once *max_retries* attempts have failed.
        """
        settings = self._settings.load()
        if max_retries is None:
            max_retries = settings["max_retries"]
        policy = RetryPolicy(
            max_attempts=max_retries,
            sleep=self._sleep,
        )
        model = self._settings.get_model()
        messages = turns_to_messages(turns, system)
        options = {
            "num_predict": settings["max_output_tokens"],
            "temperature": settings["temperature"],
        }

        async def attempt(number: int) -> str:
            index = self.pool.select()
            self.pool.record_usage(index)
            log.debug("attempt %d using credential %d", number, index + 1)
            try:
                return await self._invoke(index, model, messages, options)
            except CredentialError as exc:
                self.pool.mark_failed(index, failure_kind(exc))
                raise

        return await policy.run(attempt)

    async def _invoke(
        self,
        index: int,
        model: str,
        messages: list[dict[str, str]],
        options: dict[str, Any],
    ) -> str:
        try:
            response = await self._client(index).chat(
                model=model, messages=messages, options=options,
            )
        except ResponseError as exc:
            raise classify_response_error(exc) from exc
        except Exception as exc:
            raise GenerationTransientError(str(exc)) from exc
        text = response["message"]["content"] or ""
        if not text.strip():
            raise GenerationEmptyResponse("empty response from model")
        return text.strip()

    def status(self) -> dict[str, Any]:
        return self.pool.status()
