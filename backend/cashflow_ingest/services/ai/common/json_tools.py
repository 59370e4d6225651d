"""JSON extraction from model responses (fenced blocks, prose around the payload)."""

from __future__ import annotations

import json
import logging
import re
from typing import Iterator

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> dict | list | None:
    """Return the first JSON object or array found in *text*, else ``None``.

    Tries, in order: the whole text, the contents of each fenced code block,
    then a brace-balanced scan from each ``{`` or ``[`` outside earlier payloads.
    """
    for payload in _payloads(text):
        return payload
    logger.debug("No JSON payload found in %d chars of model output", len(text or ""))
    return None


def extract_json_object(text: str) -> dict | None:
    """Like ``extract_json`` but skips top-level arrays until an object shows up."""
    for payload in _payloads(text):
        if isinstance(payload, dict):
            return payload
    return None


def _payloads(text: str) -> Iterator[dict | list]:
    if not text or not text.strip():
        return

    stripped = text.strip()
    candidates = [stripped] + [block.strip() for block in _FENCE.findall(stripped)]
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, (dict, list)):
            yield parsed

    i = 0
    while i < len(stripped):
        if stripped[i] in "{[":
            parsed, end = _extract_balanced(stripped, i)
            if parsed is not None:
                yield parsed
                i = end
        i += 1


def _extract_balanced(text: str, start: int) -> tuple[dict | list | None, int]:
    """Parse the bracket-balanced substring starting at *start*; also return where it ends."""
    closing = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in closing:
            stack.append(closing[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None, start
            if not stack:
                try:
                    return json.loads(text[start : i + 1]), i
                except ValueError:
                    return None, start
    return None, start
