from __future__ import annotations

from flask import Blueprint, jsonify

from ..app import db
from ..models import Event, Registration
from ..services.attendance import check_in
from ..shared.acl import checkin_required, organizes_event
from ..shared.errors import CertificateError, NotFound
from .certificates import error_response

bp = Blueprint("checkin", __name__, url_prefix="/api/checkin")


@bp.errorhandler(CertificateError)
def handle_checkin_error(exc: CertificateError):
    return error_response(exc)


@bp.post("/<int:event_id>/<int:registration_id>")
@checkin_required
def checkin(event_id: int, registration_id: int, current_user):
    event = db.session.get(Event, event_id)
    if not event:
        raise NotFound("Event not found")
    if current_user.role == "organizer" and not organizes_event(current_user, event):
        return (
            jsonify(
                {
                    "success": False,
                    "error": "forbidden",
                    "message": "You can only check in attendees for your own events",
                }
            ),
            403,
        )
    registration = db.session.get(Registration, registration_id)
    if not registration:
        raise NotFound("Registration not found")

    record = check_in(db.session, event, registration, staff_user=current_user)
    return (
        jsonify(
            {
                "success": True,
                "data": {
                    "id": record.id,
                    "eventId": record.event_id,
                    "registrationId": record.registration_id,
                    "participant": registration.name,
                    "status": record.status,
                    "checkedInAt": record.checked_in_at.isoformat(),
                    "checkedInBy": record.checked_in_by_id,
                },
            }
        ),
        201,
    )
