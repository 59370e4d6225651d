"""Select the ingestion path for an uploaded file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from cashflow_ingest.schemas.ingest import FormatKind

from .errors import UnsupportedFormat

logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = {".xlsx": "xlsx", ".xlsm": "xlsx"}
DELIMITED_EXTENSIONS = {".csv": "csv", ".tsv": "csv", ".txt": "csv"}
VISION_EXTENSIONS = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

_ZIP_MAGIC = b"PK\x03\x04"
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


@dataclass(frozen=True)
class DetectedFormat:
    kind: FormatKind
    parser: str = ""
    media_type: str = ""


def _sniff_media_type(content: bytes) -> str:
    head = content[:16]
    if head.startswith(b"%PDF"):
        return "application/pdf"
    if head.startswith(b"\x89PNG"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(_ZIP_MAGIC):
        return "application/zip"
    if head.startswith(_OLE2_MAGIC):
        return "application/x-ole-storage"
    return ""


def detect_format(file_name: str, content: bytes) -> DetectedFormat:
    """Return the ingestion path for *file_name*/*content*.

    The extension decides; the content signature must agree with it. Only a
    name without any extension is classified from its signature alone.
    Raises ``UnsupportedFormat`` otherwise.
    """
    if not content:
        raise UnsupportedFormat("Arquivo vazio", file_name=file_name)

    suffix = PurePosixPath((file_name or "").replace("\\", "/")).suffix.lower()
    sniffed = _sniff_media_type(content)

    if not suffix:
        return _detect_from_signature(file_name, sniffed)

    if suffix in SPREADSHEET_EXTENSIONS:
        if sniffed != "application/zip":
            raise UnsupportedFormat(
                f"O conteúdo de {file_name!r} não é uma planilha .xlsx válida",
                file_name=file_name,
            )
        return DetectedFormat(FormatKind.TABULAR, parser=SPREADSHEET_EXTENSIONS[suffix])

    if suffix == ".xls":
        raise UnsupportedFormat(
            "Planilhas .xls (formato binário antigo) não são suportadas; salve como .xlsx",
            file_name=file_name,
        )

    if suffix in DELIMITED_EXTENSIONS:
        if b"\x00" in content[:4096] or sniffed:
            raise UnsupportedFormat(
                f"O conteúdo de {file_name!r} não é texto delimitado",
                file_name=file_name,
            )
        return DetectedFormat(FormatKind.TABULAR, parser=DELIMITED_EXTENSIONS[suffix])

    if suffix in VISION_EXTENSIONS:
        expected = VISION_EXTENSIONS[suffix]
        if sniffed != expected:
            raise UnsupportedFormat(
                f"O conteúdo de {file_name!r} não corresponde à extensão {suffix}",
                file_name=file_name,
            )
        return DetectedFormat(FormatKind.VISION, media_type=expected)

    raise UnsupportedFormat(f"Extensão {suffix} não suportada", file_name=file_name)


def _detect_from_signature(file_name: str, sniffed: str) -> DetectedFormat:
    if sniffed == "application/zip":
        return DetectedFormat(FormatKind.TABULAR, parser="xlsx")
    if sniffed in VISION_EXTENSIONS.values():
        logger.info("No extension on %r – detected %s from signature", file_name, sniffed)
        return DetectedFormat(FormatKind.VISION, media_type=sniffed)
    raise UnsupportedFormat(
        f"Não foi possível identificar o tipo de {file_name!r}",
        file_name=file_name,
    )
