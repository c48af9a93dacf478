from __future__ import annotations

import logging

from ..models import Certificate, Event, Registration
from ..shared.certificates import normalize_certificate_code
from ..shared.certificates_layout import CONTENT_TYPES
from ..shared.errors import NotFound, StorageKeyNotFound
from ..shared.time import fmt_date_range

logger = logging.getLogger("eventdesk.certificates")


class VerificationLookup:
    """Public lookups by certificate code; no authentication involved."""

    def __init__(self, session, storage):
        self.session = session
        self.storage = storage

    def _by_code(self, code: str | None) -> Certificate:
        normalized = normalize_certificate_code(code)
        if not normalized:
            raise NotFound()
        cert = (
            self.session.query(Certificate)
            .filter_by(certificate_code=normalized)
            .one_or_none()
        )
        if not cert:
            raise NotFound()
        return cert

    def verify(self, code: str | None) -> dict:
        cert = self._by_code(code)
        registration = cert.registration
        event = cert.event
        return {
            "code": cert.certificate_code,
            "participantName": registration.name,
            "participantEmail": registration.email,
            "issuedAt": cert.issued_at.isoformat(),
            "fileUrl": cert.file_url,
            "event": {
                "title": event.title,
                "date": fmt_date_range(event.start_date, event.end_date),
                "location": event.location,
            },
        }

    def download(self, code: str | None) -> tuple[bytes, str, str]:
        cert = self._by_code(code)
        try:
            content = self.storage.get(cert.storage_key)
        except StorageKeyNotFound:
            logger.warning(
                "[CERT-MISSING] code=%s key=%s", cert.certificate_code, cert.storage_key
            )
            raise NotFound("Certificate file not found")
        filename = f"certificate-{cert.certificate_code}.{cert.file_format}"
        content_type = CONTENT_TYPES.get(cert.file_format, "application/octet-stream")
        return content, filename, content_type

    def list_for_event(self, event: Event) -> list[dict]:
        rows = (
            self.session.query(Certificate, Registration)
            .join(Registration, Certificate.registration_id == Registration.id)
            .filter(Certificate.event_id == event.id)
            .order_by(Certificate.issued_at.desc(), Certificate.id.desc())
            .all()
        )
        return [
            {
                "id": cert.id,
                "certificateCode": cert.certificate_code,
                "issuedAt": cert.issued_at.isoformat(),
                "fileUrl": cert.file_url,
                "fileFormat": cert.file_format,
                "participant": {
                    "registrationId": registration.id,
                    "name": registration.name,
                    "email": registration.email,
                },
                "event": {"id": event.id, "title": event.title},
            }
            for cert, registration in rows
        ]
