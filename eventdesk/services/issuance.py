from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError

from ..models import AuditLog, Certificate, CertificateTemplate, Event, Registration
from ..shared.certificates import (
    ArtifactRenderer,
    build_certificate_data,
    generate_certificate_code,
)
from ..shared.errors import DuplicateIssuance, TemplateNotFound
from ..shared.time import utcnow
from .attendance import AttendanceGate

logger = logging.getLogger("eventdesk.certificates")

ORPHAN_ACTION = "certificate_orphaned_artifact"


@dataclass
class IssueResult:
    status: str
    certificate: Certificate


@dataclass
class BatchResult:
    generated: int = 0
    skipped: int = 0
    total: int = 0
    certificates: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "generated": self.generated,
            "skipped": self.skipped,
            "total": self.total,
            "certificates": self.certificates,
            "errors": self.errors,
        }


def certificate_storage_key(event_id: int, code: str, extension: str) -> str:
    return f"certificates/{event_id}/{code}.{extension}"


def build_ledger(session, storage, converter, config) -> "CertificateLedger":
    renderer = ArtifactRenderer(
        storage, converter, document_output=config.get("CERT_DOCUMENT_OUTPUT", "pdf")
    )
    return CertificateLedger(
        session,
        storage,
        renderer,
        public_base_url=config.get("PUBLIC_BASE_URL", ""),
    )


class CertificateLedger:
    """Issues at most one certificate per (event, registration) pair."""

    def __init__(
        self,
        session,
        storage,
        renderer: ArtifactRenderer,
        public_base_url: str = "",
        gate: AttendanceGate | None = None,
    ):
        self.session = session
        self.storage = storage
        self.renderer = renderer
        self.public_base_url = public_base_url
        self.gate = gate or AttendanceGate(session)

    def _existing(self, event_id: int, registration_id: int) -> Certificate | None:
        return (
            self.session.query(Certificate)
            .filter_by(event_id=event_id, registration_id=registration_id)
            .one_or_none()
        )

    def resolve_template(self, event: Event, template_id) -> CertificateTemplate | None:
        if template_id in (None, "", "default"):
            return None
        try:
            template_pk = int(template_id)
        except (TypeError, ValueError):
            raise TemplateNotFound(f"Template not found: {template_id}")
        template = self.session.get(CertificateTemplate, template_pk)
        if not template or template.event_id not in (None, event.id):
            raise TemplateNotFound(f"Template not found: {template_id}")
        return template

    def issue(
        self,
        event: Event,
        registration: Registration,
        template: CertificateTemplate | None = None,
        issued_by=None,
        now: datetime | None = None,
        serial: int = 1,
    ) -> IssueResult:
        self.gate.ensure_ended(event, now)
        existing = self._existing(event.id, registration.id)
        if existing:
            logger.info(
                "[CERT-SKIP] event=%s registration=%s code=%s",
                event.id,
                registration.id,
                existing.certificate_code,
            )
            return IssueResult("skipped", existing)
        self.gate.ensure_attended(event, registration)

        issued_at = now or utcnow()
        code = generate_certificate_code()
        data = build_certificate_data(
            event, registration, code, issued_at, self.public_base_url, serial
        )
        artifact = self.renderer.render(data, template)

        key = certificate_storage_key(event.id, code, artifact.extension)
        file_url = self.storage.put(key, artifact.content, artifact.content_type)

        cert = Certificate(
            event_id=event.id,
            registration_id=registration.id,
            template_id=template.id if template else None,
            certificate_code=code,
            storage_key=key,
            file_url=file_url,
            file_format=artifact.extension,
            issued_at=issued_at,
            issued_by_id=issued_by.id if issued_by else None,
        )
        try:
            self._insert(cert, event, registration, issued_by)
        except DuplicateIssuance as exc:
            existing = self._existing(event.id, registration.id)
            logger.info("[CERT-SKIP] %s code=%s", exc, existing.certificate_code)
            return IssueResult("skipped", existing)

        logger.info(
            "[CERT] issued code=%s event=%s registration=%s format=%s mode=%s",
            code,
            event.id,
            registration.id,
            artifact.extension,
            artifact.mode,
        )
        return IssueResult("generated", cert)

    def _insert(self, cert: Certificate, event, registration, issued_by) -> None:
        """Commit ``cert``; the unique pair constraint decides concurrent races."""
        key = cert.storage_key
        event_id, registration_id = event.id, registration.id
        user_id = issued_by.id if issued_by else None
        self.session.add(cert)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            reason = str(exc.orig if exc.orig is not None else exc)
            logger.warning(
                "[CERT-ORPHAN] key=%s event=%s registration=%s reason=%s",
                key,
                event_id,
                registration_id,
                reason,
            )
            self.session.add(
                AuditLog(
                    user_id=user_id,
                    event_id=event_id,
                    registration_id=registration_id,
                    action=ORPHAN_ACTION,
                    details=json.dumps({"storage_key": key, "reason": reason}),
                )
            )
            self.session.commit()
            if self._existing(event_id, registration_id):
                raise DuplicateIssuance(
                    f"Certificate already issued for registration {registration_id}"
                ) from exc
            raise

    def issue_all(
        self,
        event: Event,
        registration_ids: Iterable[int] | None = None,
        template: CertificateTemplate | None = None,
        issued_by=None,
        now: datetime | None = None,
    ) -> BatchResult:
        registrations = self.gate.eligible_registrations(event, registration_ids, now)
        result = BatchResult(total=len(registrations))

        for serial, registration in enumerate(registrations, start=1):
            try:
                outcome = self.issue(
                    event,
                    registration,
                    template=template,
                    issued_by=issued_by,
                    now=now,
                    serial=serial,
                )
            except Exception as exc:
                self.session.rollback()
                logger.exception(
                    "[CERT-FAIL] event=%s registration=%s email=%s",
                    event.id,
                    registration.id,
                    registration.email,
                )
                result.errors.append(
                    {
                        "registration_id": registration.id,
                        "participant": registration.name,
                        "error": str(exc),
                    }
                )
                continue

            if outcome.status == "skipped":
                result.skipped += 1
                continue
            result.generated += 1
            cert = outcome.certificate
            result.certificates.append(
                {
                    "participant": registration.name,
                    "email": registration.email,
                    "registrationId": registration.id,
                    "certificateCode": cert.certificate_code,
                    "fileUrl": cert.file_url,
                    "fileFormat": cert.file_format,
                }
            )

        logger.info(
            "[CERT] batch event=%s generated=%s skipped=%s failed=%s total=%s",
            event.id,
            result.generated,
            result.skipped,
            len(result.errors),
            result.total,
        )
        return result
