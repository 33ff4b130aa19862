from __future__ import annotations

from typing import Any, Dict, Optional


class IngestError(Exception):
    """
    Base exception for every rejection raised by the ingestion core.

    Each error names the pipeline stage that failed and, where useful, the rule
    inside that stage. Rejections are terminal for the upload in question; none
    of them is a transient fault and callers must not retry the same bytes.
    """

    code: str = "ingest_error"
    stage: str = "ingest"

    def __init__(self, reason: str, *, rule: Optional[str] = None, stage: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.rule = rule
        if stage is not None:
            self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.reason,
            "stage": self.stage,
            "rule": self.rule,
        }


class UnsupportedSourceError(IngestError):
    """
    Raised when an Entry receives an input type it does not know how to repackage.
    """

    code = "unsupported_source"
    stage = "entry"


class MissingPayloadError(IngestError):
    """
    Raised when an Entry has no input attached, or the transfer reported an error.
    """

    code = "missing_payload"
    stage = "entry"


class SizeViolation(IngestError):
    """
    Claimed or actual size is outside the bounds accepted by a strategy.
    """

    code = "size_violation"
    stage = "prove"


class SpoofedTypeError(IngestError):
    """
    The content-sniffed MIME type is not in the strategy allow-list.
    """

    code = "spoofed_type"
    stage = "prove"


class StructuralValidationError(IngestError):
    """
    Bytes parse as the expected family but fail its structural checks.
    """

    code = "structural_validation"
    stage = "prove"


class DecodeError(IngestError):
    """
    The canonical decoder could not materialize the bytes (or timed out).
    """

    code = "decode_error"
    stage = "prove"


class PolicyViolationError(IngestError):
    """
    A filter rejected an otherwise valid, already proved file.
    """

    code = "policy_violation"
    stage = "filter"


class PolicyConfigurationError(IngestError):
    """
    Policy options or catalog lookups are invalid.
    """

    code = "policy_configuration"
    stage = "policy"


class VariantError(IngestError):
    """
    A variant chain failed. Fatal only for variants a policy marks mandatory.
    """

    code = "variant_error"
    stage = "variant"


class StorageFailure(IngestError):
    """
    A Store or RecordStore could not persist, read or remove data.
    """

    code = "storage_failure"
    stage = "store"


class RecordNotFoundError(IngestError):
    """
    No FileRecord exists for the requested id.
    """

    code = "record_not_found"
    stage = "store"


class UnprovedContextError(RuntimeError):
    """
    Programming error: an unproved FileContext reached a stage that requires proof.
    """

    pass
