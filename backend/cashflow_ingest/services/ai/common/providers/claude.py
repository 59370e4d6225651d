"""Anthropic / Claude provider."""

from __future__ import annotations

import base64
import logging
import time

from .base import Attachment, BaseProvider, ProviderResult, post_json

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"


def _attachment_block(attachment: Attachment) -> dict:
    source = {
        "type": "base64",
        "media_type": attachment.media_type,
        "data": base64.b64encode(attachment.data).decode("ascii"),
    }
    if attachment.is_pdf:
        return {"type": "document", "source": source}
    return {"type": "image", "source": source}


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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
        model = model or "claude-sonnet-4-20250514"
        t0 = time.monotonic()

        content = [_attachment_block(a) for a in attachments]
        content.append({"type": "text", "text": prompt})

        payload: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        # Extended thinking requires the default temperature and max_tokens above the budget.
        if thinking_budget and thinking_budget < max_tokens:
            payload["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        else:
            payload["temperature"] = temperature

        data = await post_json(
            self.name,
            API_URL,
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            payload=payload,
            timeout_seconds=timeout_seconds,
        )

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
