"""Table region classification: map headers to canonical fields and pick an entity kind."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from cashflow_ingest.schemas.records import EntityKind
from cashflow_ingest.services.ingest.errors import LowConfidenceClassification
from cashflow_ingest.services.ingest.options import ExtractionOptions
from cashflow_ingest.services.ingest.value_transformer import canonical_field

from ..common import router as ai_router
from ..common.json_tools import extract_json_object
from ..common.providers.base import ProviderResult
from ..common.retry import call_with_retry
from .contracts import AISheetAnalysisResult

logger = logging.getLogger(__name__)

SHEET_ANALYSIS_SYSTEM_PROMPT = (
    "Você é um especialista em planilhas financeiras brasileiras. Classifique uma "
    "tabela e mapeie suas colunas para campos canônicos. Responda APENAS com JSON."
)

FIELD_GUIDE = """\
TIPOS (entity_kind):
- "contract": {contract_term}. Indicadores: cliente, projeto, contrato, valor total, assinatura.
- "receivable": dinheiro entrando ({receivable_term}). Indicadores: recebimento, parcela, cobrança, RT, medição, nota fiscal.
- "expense": dinheiro saindo ({expense_term}). Indicadores: pagamento, despesa, custo, a pagar, fornecedor.
- "skip": não é dado financeiro (instruções, legendas, totais, resumos, configuração).

CAMPOS POR TIPO:
- contract: client_name, project_name, total_value, signed_date, status, description, category
- receivable: contract_ref (nome do projeto/contrato), client_name, expected_date, amount, status, received_date, received_amount, description, category
- expense: description, vendor, amount, due_date, category, status, paid_date, paid_amount, contract_ref
- Qualquer tipo: "date" para uma coluna de data genérica, "ignore" para colunas sem uso.

REGRAS:
- Cada campo recebe no máximo uma coluna, exceto "description", que pode receber várias.
- Use o índice da coluna (começando em 0) exatamente como listado.
- confidence entre 0.0 e 1.0.

FORMATO:
{{"entity_kind": "receivable", "confidence": 0.9, "reason": "...",
  "columns": [{{"index": 0, "header": "Nome do Projeto", "field": "contract_ref"}},
              {{"index": 1, "header": "Valor da Parcela", "field": "amount"}}]}}"""


@dataclass
class RegionAnalysis:
    """Classification of one table region.

    ``mapping`` keys are column indices relative to the region's first column.
    """

    entity_kind: EntityKind
    confidence: float
    mapping: dict[int, str] = field(default_factory=dict)
    reason: str = ""
    provider_result: ProviderResult | None = None


def build_prompt(
    *,
    file_name: str,
    sheet_name: str,
    headers: list[str],
    sample: list[list[str]],
    options: ExtractionOptions,
) -> str:
    profession = options.profession
    header_lines = "\n".join(f"{i}: {label}" for i, label in enumerate(headers))
    sample_lines = "\n".join(json.dumps(row, ensure_ascii=False) for row in sample) or "(sem dados)"
    hints = ""
    if options.entity_hints:
        hints = "\nDICA DO USUÁRIO: esta tabela provavelmente contém " + ", ".join(
            str(k) for k in options.entity_hints
        ) + ".\n"

    guide = FIELD_GUIDE.format(
        contract_term=profession.contract_term,
        receivable_term=profession.receivable_term,
        expense_term=profession.expense_term,
    )
    return (
        f"CONTEXTO: {profession.prompt_context}\n\n"
        f'ARQUIVO: "{file_name}"  ABA: "{sheet_name}"\n\n'
        f"COLUNAS:\n{header_lines}\n\n"
        f"AMOSTRA ({len(sample)} linhas):\n{sample_lines}\n"
        f"{hints}\n{guide}"
    )


def resolve_mapping(result: AISheetAnalysisResult, headers: list[str]) -> dict[int, str]:
    """Turn the model's column assignments into ``{column_index: field}``."""
    by_label = {label.strip().lower(): i for i, label in enumerate(headers)}
    mapping: dict[int, str] = {}
    for column in result.columns:
        index = column.index
        if index is None or not 0 <= index < len(headers):
            index = by_label.get(column.header.strip().lower())
        if index is None:
            logger.warning("Column %r not found in region headers – ignored", column.header)
            continue
        name = canonical_field(column.field, result.entity_kind)
        if name is not None and index not in mapping:
            mapping[index] = name
    return mapping


async def analyze_region(
    *,
    file_name: str,
    sheet_name: str,
    headers: list[str],
    sample: list[list[str]],
    options: ExtractionOptions,
    limiter: contextlib.AbstractAsyncContextManager | None = None,
) -> RegionAnalysis:
    """Classify one region from its header labels and a value sample.

    Raises ``LowConfidenceClassification`` for malformed or low-confidence
    answers; ``ProviderTimeout``/``ProviderError`` propagate after retries.
    """
    config = ai_router.resolve(
        "sheet_analysis",
        override_provider=options.override_provider,
        override_model=options.override_model,
        fast=options.use_fast_model,
    )
    prompt = build_prompt(
        file_name=file_name,
        sheet_name=sheet_name,
        headers=headers,
        sample=sample[: options.sample_rows],
        options=options,
    )
    limiter = limiter or contextlib.nullcontext()

    async def _call() -> ProviderResult:
        async with limiter:
            return await config.provider.generate(
                prompt,
                system_prompt=SHEET_ANALYSIS_SYSTEM_PROMPT,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=config.timeout_seconds,
                thinking_budget=config.thinking_budget,
            )

    provider_result = await call_with_retry(
        _call,
        label=f"sheet_analysis {file_name}/{sheet_name}",
        max_retries=options.max_retries,
        base_delay=options.retry_base_delay,
        max_delay=options.retry_max_delay,
    )

    parsed = extract_json_object(provider_result.raw_text)
    if parsed is None:
        raise LowConfidenceClassification("Resposta de classificação sem JSON válido")
    try:
        result = AISheetAnalysisResult.model_validate(parsed)
    except ValidationError as exc:
        raise LowConfidenceClassification(f"Resposta de classificação inválida: {exc.errors()[0]['msg']}") from exc

    if result.entity_kind == EntityKind.SKIP:
        return RegionAnalysis(
            entity_kind=EntityKind.SKIP,
            confidence=result.confidence,
            reason=result.reason or "Tabela sem dados financeiros",
            provider_result=provider_result,
        )

    if result.confidence < options.min_classification_confidence:
        raise LowConfidenceClassification(
            f"Classificação {result.entity_kind} com confiança {result.confidence:.2f} "
            f"abaixo do mínimo {options.min_classification_confidence:.2f}"
        )

    mapping = resolve_mapping(result, headers)
    if not mapping:
        raise LowConfidenceClassification("Nenhuma coluna mapeada para campos conhecidos")

    logger.info(
        "Region in %s/%s classified as %s (confidence %.2f, %d columns mapped)",
        file_name, sheet_name, result.entity_kind, result.confidence, len(mapping),
    )
    return RegionAnalysis(
        entity_kind=result.entity_kind,
        confidence=result.confidence,
        mapping=mapping,
        reason=result.reason,
        provider_result=provider_result,
    )
