# app/core/errors.py
from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """
    Base for every domain failure in the ingest/match/commission pipeline.

    `code` is stable and machine readable (stored on webhook events, returned
    in API error bodies); `status_code` is what a manual API call maps it to.
    """

    code = "RECONCILIATION_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class SignatureInvalid(ReconciliationError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class PayloadMalformed(ReconciliationError):
    code = "PAYLOAD_MALFORMED"
    status_code = 400


class TenantUnresolved(ReconciliationError):
    code = "TENANT_UNRESOLVED"
    status_code = 404


class UnsupportedOutcome(ReconciliationError):
    code = "UNSUPPORTED_OUTCOME"
    status_code = 422


class EntityNotFound(ReconciliationError):
    code = "ENTITY_NOT_FOUND"
    status_code = 404


class AlreadyProcessed(ReconciliationError):
    code = "ALREADY_PROCESSED"
    status_code = 409


class SubmissionInvalid(ReconciliationError):
    code = "SUBMISSION_INVALID"
    status_code = 422


class InvalidTransition(ReconciliationError):
    code = "INVALID_TRANSITION"
    status_code = 409
