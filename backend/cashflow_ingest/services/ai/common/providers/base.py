"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any

import httpx

from cashflow_ingest.services.ingest.errors import ProviderError, ProviderTimeout


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class Attachment:
    """A rendered document sent alongside the prompt (PDF or image)."""

    media_type: str
    data: bytes
    name: str = ""

    @property
    def is_pdf(self) -> bool:
        return self.media_type == "application/pdf"


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        attachments: tuple[Attachment, ...] = (),
        model: str = "",
        temperature: float = 0.0,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
        thinking_budget: int = 0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``.

        Raises ``ProviderTimeout`` or ``ProviderError``; ``ProviderError.retryable``
        is set for rate limits, 5xx responses and transport failures.
        """


async def post_json(
    provider: str,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(url, headers=headers, json=payload)
            resp.raise_for_status()
            return resp.json()
    except httpx.TimeoutException as exc:
        raise ProviderTimeout(f"{provider}: tempo esgotado após {timeout_seconds:.0f}s") from exc
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        retryable = status == 429 or status >= 500
        raise ProviderError(
            f"{provider}: HTTP {status}",
            retryable=retryable,
            status_code=status,
        ) from exc
    except httpx.TransportError as exc:
        raise ProviderError(f"{provider}: falha de conexão ({exc})", retryable=True) from exc
    except ValueError as exc:
        raise ProviderError(f"{provider}: resposta não é JSON") from exc
