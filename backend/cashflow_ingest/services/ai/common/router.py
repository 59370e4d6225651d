"""AI Router: resolves provider + model per scope with override > ENV > mock chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cashflow_ingest.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

SCOPES = ("sheet_analysis", "vision")


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model after the override chain."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    thinking_budget: int = 0


def resolve(
    scope: str,
    *,
    override_provider: str | None = None,
    override_model: str | None = None,
    fast: bool = False,
) -> ResolvedConfig:
    """Resolve provider + model for *scope* (``sheet_analysis`` or ``vision``).

    Resolution chain (first non-empty wins):
      1. ``override_provider`` / ``override_model`` (request param, only when
         ``enable_ai_overrides=True``).
      2. ENV scope-specific: ``AI_SHEET_ANALYSIS_PROVIDER`` / ``AI_VISION_MODEL`` etc.
         With ``fast=True`` the sheet analysis scope uses its fast model and
         the smaller token/reasoning budget.
      3. ``"mock"`` with empty model.

    A model outside the provider's allowlist is replaced by the first
    allowed one.
    """
    if scope not in SCOPES:
        raise ValueError(f"Unknown AI scope {scope!r}")
    settings = get_settings()

    # --- 1. Provider ---
    provider_name = ""
    if settings.enable_ai_overrides and override_provider:
        provider_name = override_provider.lower().strip()
    if not provider_name:
        provider_name = (
            settings.ai_sheet_analysis_provider if scope == "sheet_analysis" else settings.ai_vision_provider
        ).lower().strip()
    if not provider_name:
        provider_name = "mock"

    # --- 2. Model + budgets ---
    model = ""
    if settings.enable_ai_overrides and override_model:
        model = override_model.strip()

    if scope == "sheet_analysis":
        if fast:
            model = model or settings.ai_sheet_analysis_fast_model
            max_tokens = settings.ai_sheet_analysis_fast_max_tokens
            thinking = settings.ai_sheet_analysis_fast_thinking_budget
        else:
            model = model or settings.ai_sheet_analysis_model
            max_tokens = settings.ai_sheet_analysis_max_tokens
            thinking = settings.ai_sheet_analysis_thinking_budget
        timeout = settings.ai_timeout_seconds
    else:
        model = model or settings.ai_vision_model
        max_tokens = settings.ai_vision_max_tokens
        thinking = settings.ai_vision_thinking_budget
        timeout = settings.ai_vision_timeout_seconds

    # --- 3. Validate model against allowlist ---
    allowed_models = settings.ai_allowed_models.get(provider_name, [])
    if allowed_models and model and model not in allowed_models:
        logger.warning(
            "Model %r not in allowlist for %r: using first allowed: %r",
            model,
            provider_name,
            allowed_models[0],
        )
        model = allowed_models[0]
    if allowed_models and not model:
        model = allowed_models[0]

    provider = get_provider(provider_name)
    if provider.name == "mock":
        model = ""

    return ResolvedConfig(
        provider=provider,
        model=model,
        temperature=settings.ai_temperature,
        max_tokens=max_tokens,
        timeout_seconds=timeout,
        thinking_budget=thinking,
    )
