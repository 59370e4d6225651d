"""Shared builders for ingestion tests: scripted AI provider, workbooks, options."""

from __future__ import annotations

import io
import json
from datetime import date
from decimal import Decimal

import openpyxl

from cashflow_ingest.services.ai.common.providers.base import Attachment, BaseProvider, ProviderResult
from cashflow_ingest.services.ai.professions import get_profession
from cashflow_ingest.services.ingest.cells import EMPTY, DateCell, NumberCell, SheetGrid
from cashflow_ingest.services.ingest.options import ExtractionOptions
from cashflow_ingest.services.ingest.spreadsheet_parser import classify_text

REFERENCE_DATE = date(2024, 1, 15)


class ScriptedProvider(BaseProvider):
    """Answers by the first rule whose needle appears in the prompt.

    A rule's answer is a dict (sent as JSON), a raw string, an exception
    instance (raised), or a list of those consumed one per call (the last
    one repeats).
    """

    name = "scripted"

    def __init__(self, rules=(), default=None):
        self.rules = [(needle, list(answer) if isinstance(answer, list) else [answer]) for needle, answer in rules]
        self.default = default
        self.prompts: list[str] = []
        self.attachments: list[tuple[Attachment, ...]] = []

    async def generate(
        self,
        prompt,
        *,
        system_prompt=None,
        attachments=(),
        model="",
        temperature=0.0,
        max_tokens=1024,
        timeout_seconds=30.0,
        thinking_budget=0,
    ):
        self.prompts.append(prompt)
        self.attachments.append(attachments)
        answer = self.default
        for needle, answers in self.rules:
            if needle in prompt:
                answer = answers.pop(0) if len(answers) > 1 else answers[0]
                break
        if isinstance(answer, Exception):
            raise answer
        text = answer if isinstance(answer, str) else json.dumps(answer or {}, ensure_ascii=False)
        return ProviderResult(
            raw_text=text,
            model=model or "scripted-1",
            provider=self.name,
            prompt_tokens=10,
            completion_tokens=5,
        )


def analysis(kind: str, fields: list[str], confidence: float = 0.9, reason: str = "") -> dict:
    """A sheet-analysis answer mapping column ``i`` to ``fields[i]``."""
    return {
        "entity_kind": kind,
        "confidence": confidence,
        "reason": reason,
        "columns": [{"index": i, "header": "", "field": f} for i, f in enumerate(fields)],
    }


def make_options(**overrides) -> ExtractionOptions:
    profession = overrides.pop("profession", "arquitetura")
    base = ExtractionOptions(
        profession=get_profession(profession),
        reference_date=REFERENCE_DATE,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )
    return base.with_overrides(**overrides) if overrides else base


def xlsx_bytes(sheets: dict[str, list[list]]) -> bytes:
    """Build an xlsx workbook; ``None`` leaves a cell empty, ``[]`` a blank row."""
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for r, row in enumerate(rows, start=1):
            for c, value in enumerate(row, start=1):
                if value is not None:
                    ws.cell(row=r, column=c, value=value)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def csv_bytes(rows: list[list], delimiter: str = ";", encoding: str = "utf-8") -> bytes:
    lines = [delimiter.join("" if v is None else str(v) for v in row) for row in rows]
    return ("\n".join(lines) + "\n").encode(encoding)


def to_cell(value):
    if value is None or value == "":
        return EMPTY
    if isinstance(value, date):
        return DateCell(value)
    if isinstance(value, (int, float, Decimal)):
        return NumberCell(Decimal(str(value)))
    return classify_text(str(value))


def grid(rows: list[list], name: str = "Planilha") -> SheetGrid:
    """A rectangular grid straight from Python values."""
    width = max((len(r) for r in rows), default=0)
    return SheetGrid(name=name, rows=[[to_cell(v) for v in r] + [EMPTY] * (width - len(r)) for r in rows])


CONTRACT_HEADER = ["Cliente", "Projeto", "Valor", "Data"]
CONTRACT_ROWS = [
    ["Ana Lima", "Residência Lima", "R$ 3.500,00", "23/10/2020"],
    ["Bruno Costa", "Loja Centro", "R$ 12.000,00", "05/01/2021"],
    ["Carla Dias", "Casa de Praia", "R$ 8.750,50", "14/02/2021"],
    ["Diego Reis", "Escritório Sul", "R$ 20.000,00", "30/03/2021"],
    ["Eva Souza", "Apartamento 302", "R$ 6.100,00", "11/04/2021"],
]
RECEIVABLE_HEADER = ["Projeto", "Parcela", "Valor da Parcela", "Vencimento"]


def receivable_rows(count: int) -> list[list]:
    projects = [row[1] for row in CONTRACT_ROWS]
    return [
        [projects[i % len(projects)], i + 1, f"R$ {500 + i},00", f"{(i % 28) + 1:02d}/06/2021"]
        for i in range(count)
    ]


def mixed_sheet_rows() -> list[list]:
    """Contract table on rows 1-6, three blank rows, receivables on rows 10-40."""
    return [CONTRACT_HEADER, *CONTRACT_ROWS, [], [], [], RECEIVABLE_HEADER, *receivable_rows(30)]
