"""Single-call record extraction from a PDF or image."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from cashflow_ingest.schemas.records import EntityKind
from cashflow_ingest.services.ingest.errors import ValueTransformFailure
from cashflow_ingest.services.ingest.options import ExtractionOptions
from cashflow_ingest.services.ingest.value_transformer import record_from_json

from ..common import router as ai_router
from ..common.json_tools import extract_json_object
from ..common.providers.base import Attachment, ProviderResult
from ..common.retry import call_with_retry
from .contracts import AIVisionExtractResult

logger = logging.getLogger(__name__)

VISION_SYSTEM_PROMPT = (
    "Você extrai dados financeiros de documentos (PDFs, fotos, prints de planilhas). "
    "Faça as contas necessárias, por exemplo somar itens para obter um total. "
    "Responda APENAS com JSON."
)

VISION_INSTRUCTIONS = """\
CONTEXTO: {context}

Extraia todos os registros financeiros do documento anexo ("{file_name}").

- contracts ({contract_term}): client_name, project_name, total_value, signed_date, status (active|completed|paused|cancelled), description, category
- receivables ({receivable_term}): contract_ref (nome do projeto), client_name, expected_date, amount, status (pending|received|overdue|cancelled), received_date, received_amount, description
- expenses ({expense_term}): description, vendor, amount, due_date, category, status (pending|paid|overdue|cancelled), paid_date, paid_amount

Datas em AAAA-MM-DD. Valores como número (1500.50), sem símbolo de moeda.
Omita campos desconhecidos. Se nada for encontrado, devolva listas vazias e explique em "note".

FORMATO:
{{"contracts": [...], "receivables": [...], "expenses": [...], "note": "resumo em uma frase"}}"""

_KIND_KEYS = (
    ("contracts", EntityKind.CONTRACT),
    ("receivables", EntityKind.RECEIVABLE),
    ("expenses", EntityKind.EXPENSE),
)


@dataclass
class VisionExtraction:
    records: list = field(default_factory=list)
    failures: list[tuple[EntityKind, ValueTransformFailure]] = field(default_factory=list)
    note: str = ""
    provider_result: ProviderResult | None = None


def build_prompt(file_name: str, options: ExtractionOptions) -> str:
    profession = options.profession
    return VISION_INSTRUCTIONS.format(
        context=profession.prompt_context,
        file_name=file_name,
        contract_term=profession.contract_term,
        receivable_term=profession.receivable_term,
        expense_term=profession.expense_term,
    )


async def extract_document(
    content: bytes,
    *,
    media_type: str,
    file_name: str,
    options: ExtractionOptions,
    limiter: contextlib.AbstractAsyncContextManager | None = None,
) -> VisionExtraction:
    """Extract canonical records from one rendered document.

    Empty or unreadable answers give an empty extraction with a note, not
    an error. ``ProviderTimeout``/``ProviderError`` propagate after retries.
    """
    config = ai_router.resolve(
        "vision",
        override_provider=options.override_provider,
        override_model=options.override_model,
    )
    prompt = build_prompt(file_name, options)
    attachment = Attachment(media_type=media_type, data=content, name=file_name)
    limiter = limiter or contextlib.nullcontext()

    async def _call() -> ProviderResult:
        async with limiter:
            return await config.provider.generate(
                prompt,
                system_prompt=VISION_SYSTEM_PROMPT,
                attachments=(attachment,),
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=config.timeout_seconds,
                thinking_budget=config.thinking_budget,
            )

    provider_result = await call_with_retry(
        _call,
        label=f"vision {file_name}",
        max_retries=options.max_retries,
        base_delay=options.retry_base_delay,
        max_delay=options.retry_max_delay,
    )

    parsed = extract_json_object(provider_result.raw_text)
    if parsed is None:
        logger.warning("Vision extraction for %s returned no JSON", file_name)
        return VisionExtraction(note="Nenhum dado legível retornado para o documento", provider_result=provider_result)
    try:
        result = AIVisionExtractResult.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Vision extraction for %s malformed: %s", file_name, exc.errors()[0]["msg"])
        return VisionExtraction(note="Resposta de extração em formato inesperado", provider_result=provider_result)

    extraction = VisionExtraction(note=result.note, provider_result=provider_result)
    for key, kind in _KIND_KEYS:
        for position, item in enumerate(getattr(result, key), start=1):
            try:
                extraction.records.append(record_from_json(item, kind, options))
            except ValueTransformFailure as exc:
                exc.message = f"{kind} #{position}: {exc.message}"
                extraction.failures.append((kind, exc))

    logger.info(
        "Vision extraction for %s: %d records, %d rejected",
        file_name, len(extraction.records), len(extraction.failures),
    )
    return extraction
