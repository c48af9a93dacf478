from __future__ import annotations

from io import BytesIO

from flask import Blueprint, current_app, jsonify, request, send_file

from ..app import db, get_converter, get_storage
from ..models import Certificate, CertificateTemplate, Event, Registration
from ..services.attendance import AttendanceGate
from ..services.issuance import build_ledger
from ..services.templates import (
    create_template,
    delete_template,
    template_payload,
    unmapped_placeholders,
    update_mapping,
)
from ..services.verification import VerificationLookup
from ..shared.acl import is_admin, organizer_required, organizes_event
from ..shared.certificates import AVAILABLE_DATA_FIELDS, printable_pdf
from ..shared.errors import (
    CertificateError,
    InvalidRequest,
    NoEligibleParticipants,
    NotFound,
    TemplateMappingError,
)
from ..shared.time import utcnow

bp = Blueprint("certificates", __name__, url_prefix="/api/certificates")


def error_response(exc: CertificateError):
    body = {"success": False, "error": exc.code, "message": str(exc)}
    body.update(exc.payload())
    if exc.status_code >= 500:
        current_app.logger.warning("[CERT-ERROR] %s: %s", exc.code, exc)
    return jsonify(body), exc.status_code


@bp.errorhandler(CertificateError)
def handle_certificate_error(exc: CertificateError):
    return error_response(exc)


def _forbidden(message: str = "You can only manage certificates for your own events"):
    return jsonify({"success": False, "error": "forbidden", "message": message}), 403


def _get_event(event_id) -> Event:
    try:
        event = db.session.get(Event, int(event_id))
    except (TypeError, ValueError):
        event = None
    if not event:
        raise NotFound("Event not found")
    return event


def _get_template(template_id: int) -> CertificateTemplate:
    template = db.session.get(CertificateTemplate, template_id)
    if not template:
        raise NotFound("Template not found")
    return template


def _template_denial(user, template: CertificateTemplate) -> str | None:
    if template.event_id is None:
        if not is_admin(user):
            return "Only administrators can edit global templates"
    elif not organizes_event(user, template.event):
        return "You can only manage certificates for your own events"
    return None


def _participant_ids(value) -> list[int] | None:
    """Parse ``participantIds``; an absent or empty list selects everyone."""
    if value is None:
        return None
    if not isinstance(value, list):
        raise InvalidRequest("participantIds must be a list of registration ids")
    ids = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, str)):
            raise InvalidRequest(f"Invalid participant id: {item!r}")
        try:
            ids.append(int(item))
        except ValueError:
            raise InvalidRequest(f"Invalid participant id: {item!r}") from None
    return ids or None


@bp.get("/fields")
@organizer_required
def fields(current_user):
    return jsonify({"success": True, "data": AVAILABLE_DATA_FIELDS})


@bp.get("/templates")
@organizer_required
def list_templates(current_user):
    event_id = request.args.get("event_id", type=int)
    query = db.session.query(CertificateTemplate)
    if event_id is not None:
        event = _get_event(event_id)
        if not organizes_event(current_user, event):
            return _forbidden()
        query = query.filter(
            (CertificateTemplate.event_id == event.id)
            | (CertificateTemplate.event_id.is_(None))
        )
    else:
        query = query.filter(CertificateTemplate.event_id.is_(None))
    templates = query.order_by(CertificateTemplate.id).all()
    return jsonify({"success": True, "data": [template_payload(t) for t in templates]})


@bp.post("/templates")
@organizer_required
def upload_template(current_user):
    upload = request.files.get("template")
    if not upload:
        raise TemplateMappingError("No template file uploaded")
    event = None
    event_id = request.form.get("event_id", type=int)
    if event_id is not None:
        event = _get_event(event_id)
        if not organizes_event(current_user, event):
            return _forbidden()
    elif not is_admin(current_user):
        return _forbidden("Only administrators can upload global templates")

    template = create_template(
        db.session,
        get_storage(),
        event,
        request.form.get("name", ""),
        request.form.get("kind", "document"),
        upload.filename or "",
        upload.read(),
    )
    current_app.logger.info(
        "[CERT-TEMPLATE] uploaded id=%s by user=%s", template.id, current_user.id
    )
    return jsonify({"success": True, "data": template_payload(template)}), 201


@bp.put("/templates/<int:template_id>/mapping")
@organizer_required
def put_mapping(template_id: int, current_user):
    template = _get_template(template_id)
    denial = _template_denial(current_user, template)
    if denial:
        return _forbidden(denial)
    payload = request.get_json(silent=True) or {}
    update_mapping(db.session, template, payload.get("placeholderMapping"))
    return jsonify({"success": True, "data": template_payload(template)})


@bp.delete("/templates/<int:template_id>")
@organizer_required
def remove_template(template_id: int, current_user):
    template = _get_template(template_id)
    denial = _template_denial(current_user, template)
    if denial:
        return _forbidden(denial)
    delete_template(db.session, get_storage(), template)
    current_app.logger.info(
        "[CERT-TEMPLATE] removed id=%s by user=%s", template_id, current_user.id
    )
    return jsonify({"success": True, "message": "Template deleted successfully"})


@bp.get("/events/past")
@organizer_required
def past_events(current_user):
    counts = (
        db.session.query(
            Registration.event_id, db.func.count(Registration.id).label("n")
        )
        .group_by(Registration.event_id)
        .subquery()
    )
    query = (
        db.session.query(Event, db.func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.event_id == Event.id)
        .filter(Event.end_date < utcnow())
    )
    if not is_admin(current_user):
        query = query.filter(Event.organizer_id == current_user.id)
    rows = query.order_by(Event.end_date.desc(), Event.id.desc()).all()
    return jsonify(
        {
            "success": True,
            "data": [
                {
                    "id": event.id,
                    "title": event.title,
                    "description": event.description,
                    "location": event.location,
                    "startDate": event.start_date.isoformat(),
                    "endDate": event.end_date.isoformat(),
                    "status": "completed",
                    "registrationsCount": count,
                }
                for event, count in rows
            ],
        }
    )


@bp.get("/eligible/<int:event_id>")
@organizer_required
def eligible_participants(event_id: int, current_user):
    event = _get_event(event_id)
    if not organizes_event(current_user, event):
        return _forbidden()
    try:
        registrations = AttendanceGate(db.session).eligible_registrations(event)
    except NoEligibleParticipants:
        registrations = []
    issued = {
        registration_id
        for (registration_id,) in db.session.query(Certificate.registration_id).filter(
            Certificate.event_id == event.id
        )
    }
    data = [
        {
            "registrationId": registration.id,
            "name": registration.name,
            "email": registration.email,
            "checkedInAt": registration.attendance.checked_in_at.isoformat()
            if registration.attendance
            else None,
            "hasCertificate": registration.id in issued,
        }
        for registration in registrations
    ]
    return jsonify({"success": True, "data": data, "count": len(data)})


@bp.post("/generate")
@organizer_required
def generate(current_user):
    payload = request.get_json(silent=True) or {}
    event = _get_event(payload.get("eventId"))
    if not organizes_event(current_user, event):
        return _forbidden("You can only generate certificates for your own events")
    registration_ids = _participant_ids(payload.get("participantIds"))

    ledger = build_ledger(db.session, get_storage(), get_converter(), current_app.config)
    template = ledger.resolve_template(event, payload.get("templateId"))
    missing = unmapped_placeholders(template)
    if missing:
        raise TemplateMappingError(
            f"Template has unmapped placeholders: {', '.join(missing)}"
        )

    result = ledger.issue_all(
        event,
        registration_ids=registration_ids,
        template=template,
        issued_by=current_user,
    )
    current_app.logger.info(
        "[CERT] generate event=%s by user=%s generated=%s total=%s",
        event.id,
        current_user.id,
        result.generated,
        result.total,
    )
    return jsonify(
        {
            "success": True,
            "data": result.as_dict(),
            "message": f"Generated {result.generated} of {result.total} certificates",
        }
    )


@bp.get("/event/<int:event_id>")
@organizer_required
def event_certificates(event_id: int, current_user):
    event = _get_event(event_id)
    if not organizes_event(current_user, event):
        return _forbidden()
    lookup = VerificationLookup(db.session, get_storage())
    return jsonify({"success": True, "data": lookup.list_for_event(event)})


@bp.get("/verify/<code>")
def verify(code: str):
    lookup = VerificationLookup(db.session, get_storage())
    certificate = lookup.verify(code)
    return jsonify({"success": True, "data": {"valid": True, "certificate": certificate}})


@bp.get("/download/<code>")
def download(code: str):
    lookup = VerificationLookup(db.session, get_storage())
    content, filename, content_type = lookup.download(code)
    if request.args.get("format") == "pdf" and content_type == "image/png":
        content = printable_pdf(content)
        filename = filename.rsplit(".", 1)[0] + ".pdf"
        content_type = "application/pdf"
    return send_file(
        BytesIO(content),
        mimetype=content_type,
        as_attachment=True,
        download_name=filename,
    )
