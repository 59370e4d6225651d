"""Per-batch extraction options, threaded explicitly through every stage."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date

from cashflow_ingest.core.config import Settings, get_settings
from cashflow_ingest.schemas.records import EntityKind
from cashflow_ingest.services.ai.professions import ProfessionProfile, get_profession


@dataclass(frozen=True)
class ExtractionOptions:
    profession: ProfessionProfile
    reference_date: date
    use_fast_model: bool = False
    support_mixed_sheets: bool = True
    entity_hints: tuple[EntityKind, ...] = ()
    override_provider: str | None = None
    override_model: str | None = None

    max_file_bytes: int = 32 * 1024 * 1024
    max_rows_per_sheet: int = 5000
    max_concurrency: int = 4

    header_scan_rows: int = 10
    header_min_score: float = 0.5
    min_blank_rows: int = 2
    min_blank_cols: int = 1
    strong_blank_run: int = 3
    boundary_min_confidence: float = 0.6
    sample_rows: int = 20
    min_classification_confidence: float = 0.5

    max_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0

    header_keywords: frozenset[str] = field(default_factory=lambda: HEADER_KEYWORDS)

    def with_overrides(self, **changes) -> "ExtractionOptions":
        return replace(self, **changes)


HEADER_KEYWORDS = frozenset(
    {
        "nome", "data", "valor", "status", "situação", "situacao", "descrição",
        "descricao", "categoria", "projeto", "cliente", "fornecedor", "parcela",
        "tipo", "vencimento", "pagamento", "recebimento", "total", "contrato",
        "paciente", "obs", "observação", "name", "date", "value", "amount",
        "description", "category", "client", "project", "vendor", "due",
        "paid", "received", "installment", "type",
    }
)


def build_options(
    settings: Settings | None = None,
    *,
    profession: str | None = None,
    use_fast_model: bool | None = None,
    entity_hints: list[str] | tuple[str, ...] | None = None,
    reference_date: date | None = None,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> ExtractionOptions:
    """Build options from settings plus request-level overrides."""
    settings = settings or get_settings()
    hints: list[EntityKind] = []
    for raw in entity_hints or ():
        name = str(raw).strip().lower().rstrip("s")
        try:
            kind = EntityKind(name)
        except ValueError:
            continue
        if kind != EntityKind.SKIP and kind not in hints:
            hints.append(kind)

    return ExtractionOptions(
        profession=get_profession(profession, default=settings.ingest_default_profession),
        reference_date=reference_date or date.today(),
        use_fast_model=settings.ingest_use_fast_model if use_fast_model is None else use_fast_model,
        support_mixed_sheets=settings.ingest_support_mixed_sheets,
        entity_hints=tuple(hints),
        override_provider=override_provider,
        override_model=override_model,
        max_file_bytes=settings.ingest_max_file_bytes,
        max_rows_per_sheet=settings.ingest_max_rows_per_sheet,
        max_concurrency=max(1, settings.ingest_max_concurrency),
        header_scan_rows=settings.ingest_header_scan_rows,
        header_min_score=settings.ingest_header_min_score,
        min_blank_rows=max(1, settings.ingest_min_blank_rows),
        min_blank_cols=max(1, settings.ingest_min_blank_cols),
        strong_blank_run=max(1, settings.ingest_strong_blank_run),
        boundary_min_confidence=settings.ingest_boundary_min_confidence,
        sample_rows=settings.ingest_sample_rows,
        min_classification_confidence=settings.ingest_min_classification_confidence,
        max_retries=max(0, settings.ai_max_retries),
        retry_base_delay=settings.ai_retry_base_delay_seconds,
        retry_max_delay=settings.ai_retry_max_delay_seconds,
    )
