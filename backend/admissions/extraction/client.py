"""
Extraction Service Adapter

Posts a document to the external field-extraction engine and returns its
JSON fields, or raises one of two exception families:

  TransientExtractionError  — timeout, connection failure, 429, 5xx.
                              The caller may retry.
  ExtractionFailure(kind)   — the engine looked at the document and gave a
                              conclusive answer (bad type, unreadable, ...).
                              Never retried.

Endpoint per document type (relative to settings.extraction_base_url):
  transcript   → POST /upload-pdf/     multipart field "file"
  certificate  → POST /certificate     multipart field "file"
  identity     → POST /certificate     multipart field "file"

Status classification:
  2xx + JSON object   → fields
  2xx + anything else → INVALID_DATA
  415                 → INVALID_FILE_TYPE
  422                 → kind read from the body ("kind" / "error" / detail.kind)
  408, 429, 5xx       → transient
  other 4xx           → FATAL
"""

from __future__ import annotations

import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import httpx

from admissions.schemas.enums import ApplicationFailedReason, DocumentType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Failure taxonomy
# ---------------------------------------------------------------------------

class ExtractionFailureKind(str, Enum):
    INVALID_DATA         = "invalid_data"
    INVALID_FORMAT       = "invalid_format"
    INVALID_FILE_TYPE    = "invalid_file_type"
    UNREADABLE_IMAGE     = "unreadable_image"
    QUALITY_CHECK_FAILED = "quality_check_failed"
    INFORMATION_MISSING  = "information_missing"
    FATAL                = "fatal"


FAILURE_REASONS: Mapping[ExtractionFailureKind, ApplicationFailedReason] = MappingProxyType({
    ExtractionFailureKind.INVALID_DATA:         ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_DATA,
    ExtractionFailureKind.INVALID_FORMAT:       ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FORMAT,
    ExtractionFailureKind.UNREADABLE_IMAGE:     ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FORMAT,
    ExtractionFailureKind.INVALID_FILE_TYPE:    ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE,
    ExtractionFailureKind.QUALITY_CHECK_FAILED: ApplicationFailedReason.DOCUMENT_QUALITY_CHECK_FAILED,
    ExtractionFailureKind.INFORMATION_MISSING:  ApplicationFailedReason.DOCUMENT_INFORMATION_MISSING,
    ExtractionFailureKind.FATAL:                ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
})


def reason_for(kind: ExtractionFailureKind | str) -> ApplicationFailedReason:
    """Reason code for a conclusive failure; anything unmapped is the generic failure."""
    try:
        return FAILURE_REASONS[ExtractionFailureKind(kind)]
    except (ValueError, KeyError):
        return ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED


class ExtractionFailure(Exception):
    """Conclusive, non-retryable failure reported by the engine."""

    def __init__(self, kind: ExtractionFailureKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind   = kind
        self.detail = detail


class TransientExtractionError(Exception):
    """Timeout / transport / overload. Safe to retry."""


_TRANSIENT_STATUSES = frozenset({408, 425, 429})


def _kind_from_body(response: httpx.Response) -> ExtractionFailureKind:
    try:
        body = response.json()
    except ValueError:
        return ExtractionFailureKind.FATAL
    if not isinstance(body, dict):
        return ExtractionFailureKind.FATAL

    raw = body.get("kind") or body.get("error")
    detail = body.get("detail")
    if raw is None and isinstance(detail, dict):
        raw = detail.get("kind")
    try:
        return ExtractionFailureKind(str(raw).lower())
    except ValueError:
        return ExtractionFailureKind.FATAL


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ExtractionClient:
    """
    One instance per worker process. A fresh httpx.AsyncClient is opened per
    call so the adapter holds no connection state across jobs.
    """

    def __init__(
        self,
        base_url: str,
        paths:    Mapping[DocumentType, str],
        timeout:  float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url  = base_url.rstrip("/")
        self._paths     = dict(paths)
        self._timeout   = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport | None = None) -> "ExtractionClient":
        return cls(
            base_url=settings.extraction_base_url,
            paths={
                DocumentType.TRANSCRIPT:  settings.extraction_transcript_path,
                DocumentType.CERTIFICATE: settings.extraction_certificate_path,
                DocumentType.IDENTITY:    settings.extraction_identity_path,
            },
            timeout=settings.extraction_timeout_seconds,
            transport=transport,
        )

    async def extract(
        self,
        data: bytes,
        document_type: DocumentType,
        *,
        file_name: str = "document",
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any]:
        document_type = DocumentType(document_type)
        path = self._paths.get(document_type)
        if path is None:
            raise ExtractionFailure(
                ExtractionFailureKind.INVALID_FILE_TYPE,
                f"no extractor for {document_type.value}",
            )

        logger.info(
            "Extraction request | type=%s file=%s size=%d",
            document_type.value, file_name, len(data),
        )
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    path,
                    files={"file": (file_name, data, content_type)},
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise TransientExtractionError(f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientExtractionError(f"transport: {exc}") from exc

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> dict[str, Any]:
        status = response.status_code

        if 200 <= status < 300:
            try:
                body = response.json()
            except ValueError as exc:
                raise ExtractionFailure(ExtractionFailureKind.INVALID_DATA, "response is not JSON") from exc
            if not isinstance(body, dict):
                raise ExtractionFailure(ExtractionFailureKind.INVALID_DATA, "response is not an object")
            return body

        if status >= 500 or status in _TRANSIENT_STATUSES:
            raise TransientExtractionError(f"HTTP {status}")
        if status == 415:
            raise ExtractionFailure(ExtractionFailureKind.INVALID_FILE_TYPE, "HTTP 415")
        if status == 422:
            kind = _kind_from_body(response)
            raise ExtractionFailure(kind, "HTTP 422")

        logger.warning("Extraction rejected | status=%d body=%s", status, response.text[:500])
        raise ExtractionFailure(ExtractionFailureKind.FATAL, f"HTTP {status}")
