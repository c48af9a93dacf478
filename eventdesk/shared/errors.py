from __future__ import annotations

from datetime import datetime
from typing import Any


class CertificateError(RuntimeError):
    """Base for every failure raised by the certificate workflow."""

    status_code = 500
    code = "certificate_error"

    def payload(self) -> dict[str, Any]:
        return {}


class NotYetEligible(CertificateError):
    """Raised when certificates are requested before the event has ended."""

    status_code = 400
    code = "not_yet_eligible"

    def __init__(self, event_end_date: datetime):
        super().__init__(
            "Certificates can only be generated after the event has ended."
        )
        self.event_end_date = event_end_date

    def payload(self) -> dict[str, Any]:
        return {"eventEndDate": self.event_end_date.isoformat()}


class NoEligibleParticipants(CertificateError):
    status_code = 400
    code = "no_eligible_participants"

    def __init__(self, message: str = "No attended participants found for certificate generation"):
        super().__init__(message)


class TemplateNotFound(CertificateError):
    status_code = 404
    code = "template_not_found"


class TemplateMappingError(CertificateError):
    status_code = 400
    code = "template_mapping_invalid"


class RenderError(CertificateError):
    """Raised when an artifact cannot be produced; never retried."""

    code = "render_failed"


class ConverterError(CertificateError):
    """Raised when the external document converter fails."""

    status_code = 502
    code = "converter_failed"


class ConverterUnavailable(ConverterError):
    status_code = 503
    code = "converter_unavailable"


class ConverterTimeout(ConverterError):
    status_code = 504
    code = "converter_timeout"


class StorageUnavailable(CertificateError):
    status_code = 503
    code = "storage_unavailable"


class StorageKeyNotFound(StorageUnavailable):
    status_code = 404
    code = "storage_key_not_found"


class DuplicateIssuance(CertificateError):
    status_code = 409
    code = "duplicate_issuance"


class NotFound(CertificateError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Certificate not found or invalid code"):
        super().__init__(message)


class InvalidRequest(CertificateError):
    status_code = 400
    code = "invalid_request"


class AttendanceValidationError(CertificateError):
    status_code = 400
    code = "attendance_invalid"


class AlreadyCheckedIn(CertificateError):
    status_code = 409
    code = "already_checked_in"

    def __init__(self, checked_in_at: datetime | None):
        super().__init__("Participant already checked in")
        self.checked_in_at = checked_in_at

    def payload(self) -> dict[str, Any]:
        return {
            "checkedInAt": self.checked_in_at.isoformat()
            if self.checked_in_at
            else None
        }
