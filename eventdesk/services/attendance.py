from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError

from ..models import ATTENDANCE_CHECKED_IN, Attendance, Event, Registration
from ..shared.errors import (
    AlreadyCheckedIn,
    AttendanceValidationError,
    NoEligibleParticipants,
    NotYetEligible,
)
from ..shared.time import utcnow

logger = logging.getLogger("eventdesk.attendance")


class AttendanceGate:
    """Decides which registrations of an event may receive a certificate."""

    def __init__(self, session):
        self.session = session

    def ensure_ended(self, event: Event, now: datetime | None = None) -> None:
        now = now or utcnow()
        if now <= event.end_date:
            logger.info(
                "[CERT-GATE] blocked event=%s reason=not_ended end=%s",
                event.id,
                event.end_date.isoformat(),
            )
            raise NotYetEligible(event.end_date)

    def ensure_attended(self, event: Event, registration: Registration) -> None:
        attended = (
            registration.event_id == event.id
            and registration.status == "confirmed"
            and self.session.query(Attendance)
            .filter_by(
                event_id=event.id,
                registration_id=registration.id,
                status=ATTENDANCE_CHECKED_IN,
            )
            .first()
            is not None
        )
        if not attended:
            logger.info(
                "[CERT-GATE] blocked event=%s registration=%s reason=not_attended",
                event.id,
                registration.id,
            )
            raise NoEligibleParticipants(
                f"Registration {registration.id} has no confirmed check-in for this event"
            )

    def eligible_registrations(
        self,
        event: Event,
        registration_ids: Iterable[int] | None = None,
        now: datetime | None = None,
    ) -> list[Registration]:
        self.ensure_ended(event, now)

        query = (
            self.session.query(Registration)
            .join(Attendance, Attendance.registration_id == Registration.id)
            .filter(
                Registration.event_id == event.id,
                Registration.status == "confirmed",
                Attendance.event_id == event.id,
                Attendance.status == ATTENDANCE_CHECKED_IN,
            )
        )
        ids = [int(rid) for rid in registration_ids or []]
        if ids:
            query = query.filter(Registration.id.in_(ids))
        registrations = query.order_by(Registration.id).all()

        if not registrations:
            logger.info("[CERT-GATE] blocked event=%s reason=no_attendees", event.id)
            raise NoEligibleParticipants()
        return registrations


def check_in(
    session,
    event: Event,
    registration: Registration,
    staff_user=None,
    now: datetime | None = None,
) -> Attendance:
    """Record that ``registration`` attended ``event``; allowed once."""

    if registration.event_id != event.id:
        raise AttendanceValidationError("Registration does not belong to this event.")
    if registration.status != "confirmed":
        raise AttendanceValidationError(
            f"Registration is {registration.status}; only confirmed registrations can check in."
        )

    existing = (
        session.query(Attendance)
        .filter_by(event_id=event.id, registration_id=registration.id)
        .one_or_none()
    )
    if existing:
        raise AlreadyCheckedIn(existing.checked_in_at)

    record = Attendance(
        event_id=event.id,
        registration_id=registration.id,
        status=ATTENDANCE_CHECKED_IN,
        checked_in_at=now or utcnow(),
        checked_in_by_id=staff_user.id if staff_user else None,
    )
    session.add(record)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = (
            session.query(Attendance)
            .filter_by(event_id=event.id, registration_id=registration.id)
            .one_or_none()
        )
        if existing:
            raise AlreadyCheckedIn(existing.checked_in_at)
        raise
    logger.info(
        "[CHECKIN] event=%s registration=%s by=%s",
        event.id,
        registration.id,
        staff_user.id if staff_user else None,
    )
    return record
