"""Mock provider: deterministic responses for tests and fallback."""

from __future__ import annotations

import json
import time

from .base import Attachment, BaseProvider, ProviderResult

# Valid for every scope and always classified as "nothing to extract".
MOCK_RESPONSE = {
    "entity_kind": "skip",
    "confidence": 0.0,
    "columns": [],
    "reason": "mock provider",
    "contracts": [],
    "receivables": [],
    "expenses": [],
    "note": "mock provider: nenhum dado extraído",
}


class MockProvider(BaseProvider):
    name = "mock"

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
        t0 = time.monotonic()
        text = json.dumps(MOCK_RESPONSE, ensure_ascii=False)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
