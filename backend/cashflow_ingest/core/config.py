from functools import lru_cache
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_MODELS: dict[str, list[str]] = {
    "claude": [
        "claude-sonnet-4-20250514",
        "claude-3-5-haiku-20241022",
    ],
    "openai": [
        "gpt-4o-2024-08-06",
        "gpt-4o-mini-2024-07-18",
    ],
}


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = Field(
        default=False,
        validation_alias=AliasChoices("EXPOSE_ERROR_DETAILS"),
    )

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: list[str] = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "address",
            "tax_id",
            "cpf",
            "cnpj",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    # --- AI providers ---
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    ai_allowed_providers_raw: str = Field(
        default="claude,openai,mock",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_allowed_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_ALLOWED_MODELS"),
    )
    enable_ai_overrides: bool = False
    ai_temperature: float = 0.0
    ai_timeout_seconds: float = 60.0
    ai_max_retries: int = 2
    ai_retry_base_delay_seconds: float = 1.0
    ai_retry_max_delay_seconds: float = 8.0

    ai_sheet_analysis_provider: str = "claude"
    ai_sheet_analysis_model: str = "claude-sonnet-4-20250514"
    ai_sheet_analysis_fast_model: str = "claude-3-5-haiku-20241022"
    ai_sheet_analysis_max_tokens: int = 16000
    ai_sheet_analysis_fast_max_tokens: int = 8000
    ai_sheet_analysis_thinking_budget: int = 5000
    ai_sheet_analysis_fast_thinking_budget: int = 3000

    ai_vision_provider: str = "claude"
    ai_vision_model: str = "claude-sonnet-4-20250514"
    ai_vision_max_tokens: int = 16000
    ai_vision_thinking_budget: int = 10000
    ai_vision_timeout_seconds: float = 120.0

    # --- Ingestion ---
    enable_document_ingest: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENABLE_DOCUMENT_INGEST"),
    )
    ingest_use_fast_model: bool = Field(
        default=False,
        validation_alias=AliasChoices("INGEST_USE_FAST_MODEL", "SETUP_ASSISTANT_USE_HAIKU"),
    )
    ingest_support_mixed_sheets: bool = Field(
        default=True,
        validation_alias=AliasChoices("INGEST_SUPPORT_MIXED_SHEETS"),
    )
    ingest_default_profession: str = "arquitetura"
    ingest_max_file_bytes: int = 32 * 1024 * 1024
    ingest_max_files_per_batch: int = 20
    ingest_max_rows_per_sheet: int = 5000
    ingest_max_concurrency: int = 4
    ingest_header_scan_rows: int = 10
    ingest_header_min_score: float = 0.5
    ingest_min_blank_rows: int = 2
    ingest_min_blank_cols: int = 1
    ingest_strong_blank_run: int = 3
    ingest_boundary_min_confidence: float = 0.6
    ingest_sample_rows: int = 20
    ingest_min_classification_confidence: float = 0.5

    @field_validator("pii_redaction_fields", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    @property
    def ai_allowed_models(self) -> dict[str, list[str]]:
        """``AI_ALLOWED_MODELS`` is a JSON object ``{"provider": ["model", ...]}``."""
        raw = self.ai_allowed_models_raw.strip()
        if not raw:
            return DEFAULT_ALLOWED_MODELS
        try:
            parsed = json.loads(raw)
        except ValueError:
            return DEFAULT_ALLOWED_MODELS
        if not isinstance(parsed, dict):
            return DEFAULT_ALLOWED_MODELS
        return {str(k).lower(): _parse_list_value(json.dumps(v)) for k, v in parsed.items()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
