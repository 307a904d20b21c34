"""
gateway.py — Driver Support Voice Assistant · Groq Chat Completion Gateway
==========================================================================
Turns a full Turn history into ONE assistant reply via Groq.

Contract
--------
  complete(history, options) → reply text (stripped)
    raises NotConfigured  — no API key in the environment ("demo mode")
    raises UpstreamError  — transport failure, non-2xx, or no usable choice

Exactly one provider call per invocation: SDK retries are disabled and
this layer never retries.  The caller owns fallback and deadlines.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence

import groq
from groq import AsyncGroq

from config import GroqConfig
from dialogue import Turn, as_messages

log = logging.getLogger("driver_support.gateway")

_AVAILABLE_MODELS: tuple[str, ...] = (
    "llama-3.1-8b-instant",
    "llama-3.3-70b-versatile",
    "openai/gpt-oss-20b",
    "gemma2-9b-it",
)


class GatewayError(Exception):
    """Base class for completion failures the orchestrator recovers from."""


class NotConfigured(GatewayError):
    """No provider credential present; expected in demo mode."""


class UpstreamError(GatewayError):
    """Provider unreachable, non-success response, or empty choice list."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CompletionOptions:
    model: str = "llama-3.1-8b-instant"
    temperature: float = 0.7
    max_tokens: int = 200
    top_p: float = 1.0

    @classmethod
    def from_config(cls, cfg: GroqConfig) -> "CompletionOptions":
        return cls(
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            top_p=cfg.top_p,
        )


def _api_key_from_env() -> Optional[str]:
    return os.getenv("GROQ_API_KEY") or os.getenv("GROQ_CLOUD_API_KEY") or None


class GroqChatGateway:
    """Thin async wrapper around AsyncGroq chat completions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else _api_key_from_env()
        self._client = client
        if not self.is_configured:
            log.warning("event=groq_not_configured — replies will use the scripted fallback")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=self._api_key, max_retries=0)
        return self._client

    async def complete(
        self,
        history: Sequence[Turn],
        options: CompletionOptions = CompletionOptions(),
    ) -> str:
        if not self.is_configured:
            raise NotConfigured("GROQ_API_KEY is not set")

        messages = as_messages(history)
        log.debug(
            "event=groq_request model=%s turns=%d temperature=%.2f max_tokens=%d",
            options.model, len(messages), options.temperature, options.max_tokens,
        )
        try:
            response = await self._get_client().chat.completions.create(
                model=options.model,
                messages=messages,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                top_p=options.top_p,
                stream=False,
            )
        except groq.APIStatusError as exc:
            raise UpstreamError(
                f"Groq API error ({exc.status_code})", status_code=exc.status_code,
            ) from exc
        except groq.APIError as exc:
            raise UpstreamError(f"Groq request failed: {exc}") from exc

        if not response.choices:
            raise UpstreamError("No response choices returned from Groq API")

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise UpstreamError("Groq returned an empty reply")
        return content

    async def health_check(self) -> bool:
        """True when the provider answers a model listing."""
        if not self.is_configured:
            return False
        try:
            await self._get_client().models.list()
        except groq.APIError as exc:
            log.warning("event=groq_health_failed error=%s", exc)
            return False
        return True

    @staticmethod
    def available_models() -> list[str]:
        return list(_AVAILABLE_MODELS)
