"""OpenAI provider."""

from __future__ import annotations

import base64
import logging
import time

from .base import Attachment, BaseProvider, ProviderResult, post_json

logger = logging.getLogger(__name__)

API_URL = "https://api.openai.com/v1/chat/completions"


def _attachment_part(attachment: Attachment) -> dict:
    encoded = base64.b64encode(attachment.data).decode("ascii")
    data_url = f"data:{attachment.media_type};base64,{encoded}"
    if attachment.is_pdf:
        return {
            "type": "file",
            "file": {"filename": attachment.name or "document.pdf", "file_data": data_url},
        }
    return {"type": "image_url", "image_url": {"url": data_url}}


class OpenAIProvider(BaseProvider):
    name = "openai"

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
        model = model or "gpt-4o-2024-08-06"
        t0 = time.monotonic()

        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if attachments:
            parts = [_attachment_part(a) for a in attachments]
            parts.append({"type": "text", "text": prompt})
            messages.append({"role": "user", "content": parts})
        else:
            messages.append({"role": "user", "content": prompt})

        if thinking_budget:
            logger.debug("OpenAI provider ignores thinking_budget=%d", thinking_budget)

        data = await post_json(
            self.name,
            API_URL,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            payload={
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": messages,
                "response_format": {"type": "json_object"},
            },
            timeout_seconds=timeout_seconds,
        )

        elapsed = (time.monotonic() - t0) * 1000
        choice = data["choices"][0]
        text = choice["message"].get("content") or ""
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
