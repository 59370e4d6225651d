"""Deterministic value transformation: money, dates, status words, records.

No AI here. Every function is pure; ``options.reference_date`` stands in for
"today" so results are reproducible.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as date_parser
from pydantic import ValidationError

from cashflow_ingest.schemas.records import (
    ContractRecord,
    ContractStatus,
    EntityKind,
    ExpenseRecord,
    ExpenseStatus,
    ReceivableRecord,
    ReceivableStatus,
)

from .cells import Cell, DateCell, EmptyCell, NumberCell, TextCell
from .errors import ValueTransformFailure
from .options import ExtractionOptions

logger = logging.getLogger(__name__)

SPREADSHEET_EPOCH = date(1899, 12, 30)
MAX_SERIAL = 2958465  # 9999-12-31
UNSPECIFIED_CLIENT = "Cliente não especificado"
DEFAULT_EXPENSE_CATEGORY = "Outros"

# ---------------------------------------------------------------------------
# Currency
# ---------------------------------------------------------------------------

_CURRENCY_MARKERS = re.compile(r"(R\$|US\$|\$|€|£|BRL|USD|EUR|reais|real)", re.IGNORECASE)
_NUMERIC_TEXT = re.compile(r"^[-+]?\(?[-+]?\d[\d.,\s]*\)?-?$")
_CLEAN_NUMBER = re.compile(r"^\d+(\.\d+)?$")
_AMOUNT_BODY = re.compile(r"^[\d.,]*\d[\d.,]*$")


def has_currency_marker(text: str) -> bool:
    return bool(_CURRENCY_MARKERS.search(text))


def parse_currency(text: str | None) -> Optional[Decimal]:
    """Parse a money string in either separator convention.

    ``"R$ 3.500,00"``, ``"3,500.00"`` and ``"3500"`` all give ``Decimal("3500.00")``
    once quantized. When both separators appear the rightmost one is decimal.
    A lone separator followed by exactly three digits is a thousands separator
    (``"3.500"`` is 3500) unless the integer part is ``0``.

    Returns ``None`` for blank input, raises ``ValueError`` when unreadable.
    """
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None

    # sign is read only after markers and spaces are gone: "R$ -3.500,00", "R$ (1.200,00)"
    body = "".join(_CURRENCY_MARKERS.sub("", raw).split())
    negative = False
    if body.startswith("(") and body.endswith(")"):
        negative, body = True, body[1:-1]
    if body.startswith("-") or body.endswith("-"):
        negative, body = True, body.strip("-")
    body = body.removeprefix("+")
    if not _AMOUNT_BODY.match(body):
        raise ValueError(f"Valor monetário inválido: {raw!r}")

    last_comma = body.rfind(",")
    last_dot = body.rfind(".")

    if last_comma >= 0 and last_dot >= 0:
        decimal_sep = "," if last_comma > last_dot else "."
        thousands_sep = "." if decimal_sep == "," else ","
        normalized = body.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif last_comma >= 0 or last_dot >= 0:
        sep = "," if last_comma >= 0 else "."
        head, _, tail = body.rpartition(sep)
        if body.count(sep) > 1:
            normalized = body.replace(sep, "")
        elif len(tail) == 3 and head not in ("", "0"):
            normalized = head + tail
        else:
            normalized = f"{head or '0'}.{tail or '0'}"
    else:
        normalized = body

    if not _CLEAN_NUMBER.match(normalized):
        raise ValueError(f"Valor monetário inválido: {raw!r}")
    try:
        value = Decimal(normalized)
    except InvalidOperation as exc:
        raise ValueError(f"Valor monetário inválido: {raw!r}") from exc
    return -value if negative else value


def looks_numeric(text: str) -> bool:
    """Whether a text cell should become a ``NumberCell`` at parse time."""
    stripped = _CURRENCY_MARKERS.sub("", text).strip()
    if not stripped or not _NUMERIC_TEXT.match(stripped):
        return False
    digits = stripped.lstrip("-+(").strip()
    # identifiers such as "00123" keep their text form
    if len(digits) > 1 and digits[0] == "0" and digits[1].isdigit():
        return False
    return True


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

class PortugueseParserInfo(date_parser.parserinfo):
    """Portuguese and English month names; "de" is skipped as in "23 de outubro de 2020"."""

    JUMP = [*date_parser.parserinfo.JUMP, "de"]
    MONTHS = [
        ("jan", "janeiro", "january"),
        ("fev", "fevereiro", "feb", "february"),
        ("mar", "marco", "march"),
        ("abr", "abril", "apr", "april"),
        ("mai", "maio", "may"),
        ("jun", "junho", "june"),
        ("jul", "julho", "july"),
        ("ago", "agosto", "aug", "august"),
        ("set", "setembro", "sep", "sept", "september"),
        ("out", "outubro", "oct", "october"),
        ("nov", "novembro", "november"),
        ("dez", "dezembro", "dec", "december"),
    ]


DATE_PARSER_INFO = PortugueseParserInfo()
_MISSING_DAY = datetime(1900, 1, 1)

_MONTH_NAMES = "|".join(
    sorted({name for names in PortugueseParserInfo.MONTHS for name in names}, key=len, reverse=True)
)
_TIME = r"(?:[t\s]\d{1,2}:\d{2}(?::\d{2})?)?"
_YEAR_FIRST = re.compile(rf"^\d{{4}}[-/.]\d{{1,2}}[-/.]\d{{1,2}}{_TIME}$")
# Only these shapes are handed to the parser, so ordinary text never reads as a date.
_DATE_SHAPE = re.compile(
    rf"^(?:\d{{4}}[-/.]\d{{1,2}}[-/.]\d{{1,2}}{_TIME}"
    rf"|\d{{1,2}}[-/.]\d{{1,2}}[-/.](?:\d{{2}}|\d{{4}}){_TIME}"
    rf"|(?:\d{{1,2}}[-/.\s]+(?:de\s+)?)?(?:{_MONTH_NAMES})\.?[-/.\s]+(?:de\s+)?(?:\d{{2}}|\d{{4}}))$"
)
_SERIAL = re.compile(r"^\d{5}(?:\.\d+)?$")


def strip_accents(text: str) -> str:
    return "".join(
        ch for ch in unicodedata.normalize("NFKD", text) if not unicodedata.combining(ch)
    )


def from_serial(serial: Decimal | float | int) -> date:
    """Spreadsheet serial day (1900 date system) to a calendar date."""
    days = int(Decimal(str(serial)))
    if days < 1 or days > MAX_SERIAL:
        raise ValueError(f"Data serial fora do intervalo: {serial}")
    return SPREADSHEET_EPOCH + timedelta(days=days)


def parse_date(text: str | None, *, allow_serial: bool = True) -> Optional[date]:
    """Parse a textual date to a calendar date.

    Day-first numeric forms are the default reading; ``mm/dd/yyyy`` is used
    only when the day-first reading is impossible. A month without a day
    (``out/2020``) is the first of that month. Returns ``None`` for blank
    input, raises ``ValueError`` when unreadable.
    """
    if text is None:
        return None
    raw = " ".join(str(text).split())
    if not raw:
        return None
    lowered = strip_accents(raw).lower()

    if _DATE_SHAPE.match(lowered):
        year_first = bool(_YEAR_FIRST.match(lowered))
        try:
            parsed = date_parser.parse(
                lowered,
                parserinfo=DATE_PARSER_INFO,
                dayfirst=not year_first,
                yearfirst=year_first,
                default=_MISSING_DAY,
            )
        except (ValueError, OverflowError) as exc:
            raise ValueError(f"Data inválida: {raw!r}") from exc
        return parsed.date()

    if allow_serial and _SERIAL.match(lowered):
        return from_serial(Decimal(lowered))

    raise ValueError(f"Data inválida: {raw!r}")


def looks_like_date(text: str) -> bool:
    try:
        return parse_date(text, allow_serial=False) is not None
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Status words
# ---------------------------------------------------------------------------

_STATUS_WORDS: dict[str, str] = {
    "ativo": "active", "ativa": "active", "active": "active", "em andamento": "active",
    "andamento": "active", "em execucao": "active", "vigente": "active", "in progress": "active",
    "concluido": "completed", "concluida": "completed", "completo": "completed",
    "completa": "completed", "finalizado": "completed", "finalizada": "completed",
    "encerrado": "completed", "entregue": "completed", "completed": "completed",
    "done": "completed", "finished": "completed",
    "pausado": "paused", "pausada": "paused", "suspenso": "paused", "suspensa": "paused",
    "paused": "paused", "on hold": "paused",
    "cancelado": "cancelled", "cancelada": "cancelled", "cancelled": "cancelled",
    "canceled": "cancelled", "estornado": "cancelled",
    "recebido": "received", "recebida": "received", "received": "received",
    "pago": "paid", "paga": "paid", "quitado": "paid", "quitada": "paid",
    "liquidado": "paid", "paid": "paid",
    "pendente": "pending", "a pagar": "pending", "a receber": "pending", "aberto": "pending",
    "em aberto": "pending", "aguardando": "pending", "previsto": "pending",
    "agendado": "pending", "pending": "pending", "open": "pending", "due": "pending",
    "atrasado": "overdue", "atrasada": "overdue", "vencido": "overdue", "vencida": "overdue",
    "em atraso": "overdue", "overdue": "overdue", "late": "overdue",
    "sim": "yes", "s": "yes", "yes": "yes", "y": "yes", "verdadeiro": "yes", "true": "yes",
    "x": "yes", "ok": "yes", "1": "yes",
    "nao": "no", "n": "no", "no": "no", "falso": "no", "false": "no", "0": "no",
}

_STATUS_BY_KIND: dict[EntityKind, dict[str, str]] = {
    EntityKind.CONTRACT: {
        "active": ContractStatus.ACTIVE, "pending": ContractStatus.ACTIVE,
        "completed": ContractStatus.COMPLETED, "paid": ContractStatus.COMPLETED,
        "received": ContractStatus.COMPLETED, "paused": ContractStatus.PAUSED,
        "cancelled": ContractStatus.CANCELLED, "yes": ContractStatus.ACTIVE,
        "no": ContractStatus.CANCELLED,
    },
    EntityKind.RECEIVABLE: {
        "received": ReceivableStatus.RECEIVED, "paid": ReceivableStatus.RECEIVED,
        "completed": ReceivableStatus.RECEIVED, "yes": ReceivableStatus.RECEIVED,
        "pending": ReceivableStatus.PENDING, "active": ReceivableStatus.PENDING,
        "no": ReceivableStatus.PENDING, "overdue": ReceivableStatus.OVERDUE,
        "cancelled": ReceivableStatus.CANCELLED,
    },
    EntityKind.EXPENSE: {
        "paid": ExpenseStatus.PAID, "received": ExpenseStatus.PAID,
        "completed": ExpenseStatus.PAID, "yes": ExpenseStatus.PAID,
        "pending": ExpenseStatus.PENDING, "active": ExpenseStatus.PENDING,
        "no": ExpenseStatus.PENDING, "overdue": ExpenseStatus.OVERDUE,
        "cancelled": ExpenseStatus.CANCELLED,
    },
}


def map_status(token: str | None, kind: EntityKind) -> Optional[str]:
    """Map a free-text status token to the enumeration of *kind*.

    Unknown tokens give ``None`` so the inference step can decide.
    """
    if token is None:
        return None
    key = " ".join(strip_accents(str(token)).lower().replace("?", " ").split())
    if not key:
        return None
    concept = _STATUS_WORDS.get(key)
    if concept is None:
        for word, candidate in _STATUS_WORDS.items():
            if len(word) > 2 and (key.startswith(word + " ") or key.endswith(" " + word)):
                concept = candidate
                break
    if concept is None:
        return None
    status = _STATUS_BY_KIND.get(kind, {}).get(concept)
    return str(status) if status is not None else None


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

MONEY_FIELDS = frozenset({"total_value", "amount", "received_amount", "paid_amount"})
DATE_FIELDS = frozenset({"signed_date", "expected_date", "received_date", "due_date", "paid_date", "date"})
STATUS_FIELDS = frozenset({"status"})

KIND_FIELDS: dict[EntityKind, frozenset[str]] = {
    EntityKind.CONTRACT: frozenset(
        {"client_name", "project_name", "total_value", "signed_date", "status",
         "description", "category", "date"}
    ),
    EntityKind.RECEIVABLE: frozenset(
        {"contract_ref", "client_name", "expected_date", "amount", "status",
         "received_date", "received_amount", "description", "category", "date"}
    ),
    EntityKind.EXPENSE: frozenset(
        {"description", "vendor", "amount", "due_date", "category", "status",
         "paid_date", "paid_amount", "contract_ref", "date"}
    ),
}

# Synonyms the classifier sometimes returns.
FIELD_ALIASES: dict[str, str] = {
    "clientname": "client_name", "client": "client_name",
    "projectname": "project_name", "project": "project_name",
    "totalvalue": "total_value", "value": "total_value",
    "signeddate": "signed_date",
    "contractid": "contract_ref", "contract": "contract_ref", "contract_name": "contract_ref",
    "project_ref": "contract_ref",
    "expecteddate": "expected_date", "receiveddate": "received_date",
    "receivedamount": "received_amount", "duedate": "due_date",
    "paiddate": "paid_date", "paidamount": "paid_amount", "supplier": "vendor",
}


def canonical_field(name: str | None, kind: EntityKind) -> Optional[str]:
    if not name:
        return None
    key = str(name).strip().lower()
    if key in ("ignore", "none", "skip", ""):
        return None
    key = FIELD_ALIASES.get(key.replace("_", ""), FIELD_ALIASES.get(key, key))
    if kind == EntityKind.CONTRACT and key == "amount":
        key = "total_value"
    if kind != EntityKind.CONTRACT and key == "total_value":
        key = "amount"
    return key if key in KIND_FIELDS.get(kind, frozenset()) else None


def cell_to_value(cell: Cell, field_name: str, kind: EntityKind) -> Any:
    """Convert one typed cell to the Python value of *field_name*.

    Returns ``None`` for empty cells, raises ``ValueError`` when the cell
    cannot hold a value of that field's type.
    """
    if isinstance(cell, EmptyCell):
        return None

    if field_name in MONEY_FIELDS:
        if isinstance(cell, NumberCell):
            return cell.value
        if isinstance(cell, TextCell):
            return parse_currency(cell.text)
        raise ValueError(f"Data {cell.display()} em coluna de valor")

    if field_name in DATE_FIELDS:
        if isinstance(cell, DateCell):
            return cell.value
        if isinstance(cell, NumberCell):
            return from_serial(cell.value)
        return parse_date(cell.text)

    if field_name in STATUS_FIELDS:
        return map_status(cell.display(), kind)

    text = cell.display().strip()
    return text or None


def json_to_value(value: Any, field_name: str, kind: EntityKind) -> Any:
    """Same as ``cell_to_value`` for JSON scalars returned by the vision path."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        value = "sim" if value else "não"
    if field_name in MONEY_FIELDS:
        if isinstance(value, (int, float)):
            return Decimal(str(value))
        return parse_currency(str(value))
    if field_name in DATE_FIELDS:
        if isinstance(value, (int, float)):
            return from_serial(value)
        return parse_date(str(value))
    if field_name in STATUS_FIELDS:
        return map_status(str(value), kind)
    return str(value).strip() or None


@dataclass
class RowValues:
    """Canonical field values gathered from one source row."""

    values: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def get(self, name: str) -> Any:
        return self.values.get(name)


def collect_row_values(pairs: list[tuple[str, str, Cell]], kind: EntityKind) -> RowValues:
    """Apply a field mapping to one row.

    *pairs* is ``(field, column_label, cell)`` in column order. Several
    columns mapped to ``description`` are joined; for any other field the
    first non-empty value wins.
    """
    row = RowValues()
    descriptions: list[str] = []
    for field_name, label, cell in pairs:
        try:
            value = cell_to_value(cell, field_name, kind)
        except ValueError as exc:
            row.warnings.append(f"{label}: {exc}")
            continue
        if value is None:
            continue
        if field_name == "description":
            if value not in descriptions:
                descriptions.append(value)
            continue
        if row.values.get(field_name) is None:
            row.values[field_name] = value
    if descriptions:
        row.values["description"] = " - ".join(descriptions)
    return row


# ---------------------------------------------------------------------------
# Inference + record construction
# ---------------------------------------------------------------------------


def build_record(kind: EntityKind, row: RowValues, options: ExtractionOptions, *, row_number: int | None = None):
    """Turn gathered values into a canonical record, inferring what is missing.

    Raises ``ValueTransformFailure`` when a required field cannot be inferred.
    """
    builders = {
        EntityKind.CONTRACT: _build_contract,
        EntityKind.RECEIVABLE: _build_receivable,
        EntityKind.EXPENSE: _build_expense,
    }
    builder = builders.get(kind)
    if builder is None:
        raise ValueTransformFailure(f"Tipo de registro não suportado: {kind}", row=row_number)
    try:
        return builder(row, options, row_number)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "registro"
        raise ValueTransformFailure(f"{where}: {first.get('msg', 'inválido')}", row=row_number) from exc


def _fail(message: str, row: RowValues, row_number: int | None) -> ValueTransformFailure:
    if row.warnings:
        message = f"{message} ({'; '.join(row.warnings)})"
    return ValueTransformFailure(message, row=row_number)


def _build_contract(row: RowValues, options: ExtractionOptions, row_number: int | None) -> ContractRecord:
    client = row.get("client_name")
    project = row.get("project_name")
    if not client and not project:
        raise _fail("Contrato sem cliente e sem projeto", row, row_number)

    signed = row.get("signed_date") or row.get("date")
    total = row.get("total_value")
    profession = options.profession
    if profession.contract_value_required and total is None:
        raise _fail("Contrato sem valor total", row, row_number)
    if profession.signed_date_required and signed is None:
        raise _fail("Contrato sem data de assinatura", row, row_number)

    return ContractRecord(
        client_name=client or project,
        project_name=project or client,
        total_value=total,
        signed_date=signed,
        status=row.get("status") or ContractStatus.ACTIVE,
        description=row.get("description"),
        category=row.get("category"),
    )


def _build_receivable(row: RowValues, options: ExtractionOptions, row_number: int | None) -> ReceivableRecord:
    amount = row.get("amount")
    if amount is None or amount <= 0:
        raise _fail("Recebível sem valor positivo", row, row_number)

    today = options.reference_date
    expected = row.get("expected_date") or row.get("date") or row.get("received_date") or today
    status = row.get("status")
    if status is None:
        status = ReceivableStatus.PENDING if expected >= today else ReceivableStatus.RECEIVED

    received_date = row.get("received_date")
    received_amount = row.get("received_amount")
    if status == ReceivableStatus.RECEIVED:
        received_date = received_date or expected
        received_amount = received_amount if received_amount else amount

    contract_ref = row.get("contract_ref")
    description = row.get("description")
    client = row.get("client_name") or contract_ref or description or UNSPECIFIED_CLIENT

    return ReceivableRecord(
        contract_ref=contract_ref,
        client_name=client,
        expected_date=expected,
        amount=amount,
        status=status,
        received_date=received_date,
        received_amount=received_amount,
        description=description,
        category=row.get("category"),
    )


def _build_expense(row: RowValues, options: ExtractionOptions, row_number: int | None) -> ExpenseRecord:
    description = row.get("description") or row.get("vendor")
    if not description:
        raise _fail("Despesa sem descrição", row, row_number)
    amount = row.get("amount")
    if amount is None or amount <= 0:
        raise _fail("Despesa sem valor positivo", row, row_number)

    today = options.reference_date
    due = row.get("due_date") or row.get("date") or row.get("paid_date") or today
    status = row.get("status")
    if status is None:
        status = ExpenseStatus.PENDING if due >= today else ExpenseStatus.PAID

    paid_date = row.get("paid_date")
    paid_amount = row.get("paid_amount")
    if status == ExpenseStatus.PAID:
        paid_date = paid_date or due
        paid_amount = paid_amount if paid_amount else amount

    return ExpenseRecord(
        description=description,
        vendor=row.get("vendor"),
        contract_ref=row.get("contract_ref"),
        amount=amount,
        due_date=due,
        category=row.get("category") or DEFAULT_EXPENSE_CATEGORY,
        status=status,
        paid_date=paid_date,
        paid_amount=paid_amount,
    )


def record_from_json(item: dict[str, Any], kind: EntityKind, options: ExtractionOptions):
    """Build a canonical record from a loosely-typed JSON object."""
    row = RowValues()
    for raw_name, raw_value in item.items():
        name = canonical_field(raw_name, kind)
        if name is None:
            continue
        try:
            value = json_to_value(raw_value, name, kind)
        except ValueError as exc:
            row.warnings.append(f"{raw_name}: {exc}")
            continue
        if value is not None and row.values.get(name) is None:
            row.values[name] = value
    return build_record(kind, row, options)
