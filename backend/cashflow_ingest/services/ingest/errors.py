"""Ingestion error taxonomy.

Every error names the smallest unit it belongs to (``scope``). Each stage
catches the errors of its own scope and records them as an ``Issue`` on the
result, so a failure never travels further up than the unit that caused it.
"""

from __future__ import annotations

from typing import Any

from cashflow_ingest.schemas.ingest import Issue, IssueScope


class IngestError(Exception):
    code = "INGEST_ERROR"
    scope = IssueScope.BATCH
    severity = "error"

    def __init__(self, message: str, **location: Any) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def to_issue(self, **location: Any) -> Issue:
        merged = {**self.location, **location}
        return Issue(
            scope=self.scope,
            code=self.code,
            message=self.message,
            severity=self.severity,
            **{k: v for k, v in merged.items() if k in Issue.model_fields},
        )


class UnsupportedFormat(IngestError):
    code = "UNSUPPORTED_FORMAT"
    scope = IssueScope.FILE


class SpreadsheetParseError(IngestError):
    code = "SPREADSHEET_UNREADABLE"
    scope = IssueScope.FILE


class FileTooLarge(IngestError):
    code = "FILE_TOO_LARGE"
    scope = IssueScope.FILE


class HeaderNotFound(IngestError):
    code = "HEADER_NOT_FOUND"
    scope = IssueScope.SHEET


class LowConfidenceClassification(IngestError):
    code = "LOW_CONFIDENCE_CLASSIFICATION"
    scope = IssueScope.REGION


class ValueTransformFailure(IngestError):
    code = "VALUE_TRANSFORM_FAILED"
    scope = IssueScope.ROW


class ReferenceUnresolved(IngestError):
    """Not raised past the materializer: the record is created without a link."""

    code = "REFERENCE_UNRESOLVED"
    scope = IssueScope.RECORD
    severity = "warning"


class RecordValidationError(IngestError):
    code = "RECORD_INVALID"
    scope = IssueScope.RECORD


class DuplicateConflict(IngestError):
    code = "DUPLICATE_CONFLICT"
    scope = IssueScope.RECORD
    severity = "warning"


class RecordStoreError(IngestError):
    code = "STORE_ERROR"
    scope = IssueScope.RECORD


class ProviderTimeout(IngestError):
    code = "PROVIDER_TIMEOUT"
    scope = IssueScope.CALL
    retryable = True


class ProviderError(IngestError):
    code = "PROVIDER_ERROR"
    scope = IssueScope.CALL

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None, **location: Any) -> None:
        super().__init__(message, **location)
        self.retryable = retryable
        self.status_code = status_code


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (ProviderTimeout, ProviderError)) and bool(getattr(exc, "retryable", False))
