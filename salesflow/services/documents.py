"""
Document summaries handed to the workflow engine.

Parsing and content validation of uploaded files happen outside the engine;
the engine only receives an already validated ``DocumentSummary``. The
``DocumentValidator`` contract is what the HTTP layer calls to turn a raw
payload into a summary. ``ExtensionDocumentValidator`` is the default: it
checks file name, extension and size, nothing more.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Protocol

from salesflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Document kind expected by each step that takes one.
STEP_DOCUMENT_KINDS = {
    1: "site_survey",
    2: "sizing_pricing",
    3: "bank_guarantee",
    6: "project_cost",
}

ALLOWED_EXTENSIONS = {
    "site_survey": {".pdf", ".xlsx", ".xls", ".docx", ".jpg", ".png"},
    "sizing_pricing": {".pdf", ".xlsx", ".xls"},
    "bank_guarantee": {".pdf"},
    "project_cost": {".xlsx", ".xls", ".pdf"},
}

DEFAULT_MAX_FILE_SIZE = 25 * 1024 * 1024


@dataclass(frozen=True)
class DocumentSummary:
    """Validated metadata plus the extracted key/value summary of a document."""
    file_name: str
    file_size: int | None = None
    mime_type: str | None = None
    summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "summary": dict(self.summary),
        }


class DocumentValidator(Protocol):
    def validate(self, kind: str, payload: dict) -> DocumentSummary: ...


def check_summary(summary, step_number: int) -> DocumentSummary:
    """Reject a missing or malformed summary before any state is touched."""
    if not isinstance(summary, DocumentSummary):
        raise ValidationError(
            f"Step {step_number} requires a validated document summary",
            details={"document": "required"},
        )
    if not (summary.file_name or "").strip():
        raise ValidationError("Document file_name is required", details={"file_name": "required"})
    if summary.file_size is not None and summary.file_size < 0:
        raise ValidationError("Document file_size must not be negative", details={"file_size": "invalid"})
    if not isinstance(summary.summary, dict):
        raise ValidationError("Document summary must be an object", details={"summary": "invalid"})
    return summary


class ExtensionDocumentValidator:
    """Accepts a document by extension and size; the content is trusted."""

    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE):
        self.max_file_size = max_file_size

    def validate(self, kind: str, payload: dict) -> DocumentSummary:
        if kind not in ALLOWED_EXTENSIONS:
            raise ValidationError(f"Unknown document kind '{kind}'", details={"kind": "invalid"})
        if not isinstance(payload, dict):
            raise ValidationError("document must be an object", details={"document": "invalid"})

        file_name = (payload.get("file_name") or "").strip()
        if not file_name:
            raise ValidationError("document.file_name is required", details={"file_name": "required"})

        ext = os.path.splitext(file_name)[1].lower()
        allowed = ALLOWED_EXTENSIONS[kind]
        if ext not in allowed:
            raise ValidationError(
                f"File type '{ext or '(none)'}' is not accepted for {kind}. "
                f"Allowed: {', '.join(sorted(allowed))}",
                details={"file_name": "invalid_extension"},
            )

        file_size = payload.get("file_size")
        if file_size is not None:
            if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
                raise ValidationError("document.file_size must be a non-negative integer",
                                      details={"file_size": "invalid"})
            if file_size > self.max_file_size:
                raise ValidationError(
                    f"File is larger than {self.max_file_size} bytes",
                    details={"file_size": "too_large"},
                )

        summary = payload.get("summary") or {}
        if not isinstance(summary, dict):
            raise ValidationError("document.summary must be an object", details={"summary": "invalid"})

        logger.debug("Document accepted", extra={"kind": kind, "file_name": file_name})
        return DocumentSummary(
            file_name=file_name,
            file_size=file_size,
            mime_type=payload.get("mime_type"),
            summary=summary,
        )
