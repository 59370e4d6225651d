"""Document ingestion endpoints: upload a batch of files, inspect capabilities."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from cashflow_ingest.core.config import get_settings
from cashflow_ingest.core.dependencies import get_db
from cashflow_ingest.schemas.ingest import BatchResult
from cashflow_ingest.services.ai.common import router as ai_router
from cashflow_ingest.services.ai.professions import PROFESSIONS
from cashflow_ingest.services.audit import SqlAuditSink
from cashflow_ingest.services.ingest.format_detector import (
    DELIMITED_EXTENSIONS,
    SPREADSHEET_EXTENSIONS,
    VISION_EXTENSIONS,
)
from cashflow_ingest.services.ingest.options import build_options
from cashflow_ingest.services.ingest.pipeline import SourceFile, run_batch
from cashflow_ingest.services.ingest.record_store import SqlRecordStore, StoreScope

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_ingest_enabled() -> None:
    settings = get_settings()
    if not settings.enable_document_ingest:
        raise HTTPException(404, "Não encontrado")


def _split_hints(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


@router.post("/ingest/batches", response_model=BatchResult)
async def create_ingest_batch(
    files: Optional[list[UploadFile]] = File(None),
    profession: Optional[str] = Form(None),
    entity_hints: Optional[str] = Form(None),
    fast_model: Optional[bool] = Form(None),
    override_provider: Optional[str] = Form(None),
    override_model: Optional[str] = Form(None),
    x_team_id: Optional[str] = Header(None, alias="X-Team-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
):
    """Extract contracts, receivables and expenses from the uploaded files."""
    _require_ingest_enabled()
    settings = get_settings()

    team_id = (x_team_id or "").strip()
    if not team_id:
        raise HTTPException(400, "Cabeçalho X-Team-Id obrigatório")
    if not files:
        raise HTTPException(400, "Nenhum arquivo enviado")
    if len(files) > settings.ingest_max_files_per_batch:
        raise HTTPException(
            400, f"Máximo de {settings.ingest_max_files_per_batch} arquivos por envio"
        )

    options = build_options(
        settings,
        profession=profession,
        use_fast_model=fast_model,
        entity_hints=_split_hints(entity_hints),
        override_provider=override_provider,
        override_model=override_model,
    )

    sources = []
    for upload in files:
        # One byte past the limit is enough to report the file as too large.
        content = await upload.read(options.max_file_bytes + 1)
        sources.append(SourceFile(name=upload.filename or "arquivo", content=content))

    if all(not source.content for source in sources):
        raise HTTPException(400, "Arquivos vazios")

    batch_id = str(uuid.uuid4())
    user_id = (x_user_id or "").strip() or None
    store = SqlRecordStore(db, StoreScope(team_id=team_id, user_id=user_id, batch_id=batch_id))

    result = await run_batch(
        sources,
        options=options,
        store=store,
        audit_sink=SqlAuditSink(db),
        team_id=team_id,
        actor_id=user_id,
        batch_id=batch_id,
    )
    db.commit()
    return result


class ScopeCapability(BaseModel):
    provider: str
    model: str


class IngestCapabilities(BaseModel):
    enabled: bool
    tabular_extensions: list[str]
    vision_extensions: list[str]
    max_file_bytes: int
    max_files_per_batch: int
    max_rows_per_sheet: int
    support_mixed_sheets: bool
    use_fast_model: bool
    professions: list[str]
    default_profession: str
    ai: dict[str, ScopeCapability]


@router.get("/ingest/capabilities", response_model=IngestCapabilities)
async def ingest_capabilities():
    _require_ingest_enabled()
    settings = get_settings()

    ai = {}
    for scope in ai_router.SCOPES:
        config = ai_router.resolve(scope, fast=settings.ingest_use_fast_model)
        ai[scope] = ScopeCapability(provider=config.provider.name, model=config.model)

    return IngestCapabilities(
        enabled=settings.enable_document_ingest,
        tabular_extensions=sorted({**SPREADSHEET_EXTENSIONS, **DELIMITED_EXTENSIONS}),
        vision_extensions=sorted(VISION_EXTENSIONS),
        max_file_bytes=settings.ingest_max_file_bytes,
        max_files_per_batch=settings.ingest_max_files_per_batch,
        max_rows_per_sheet=settings.ingest_max_rows_per_sheet,
        support_mixed_sheets=settings.ingest_support_mixed_sheets,
        use_fast_model=settings.ingest_use_fast_model,
        professions=sorted(PROFESSIONS),
        default_profession=settings.ingest_default_profession,
        ai=ai,
    )
