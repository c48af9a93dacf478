from datetime import datetime

import pytest

from eventdesk.app import db
from eventdesk.models import Attendance
from eventdesk.services.attendance import AttendanceGate, check_in
from eventdesk.shared.errors import (
    AlreadyCheckedIn,
    AttendanceValidationError,
    NoEligibleParticipants,
    NotYetEligible,
)

ENDED_END = datetime(2024, 3, 15, 17, 0)
AFTER_END = datetime(2024, 3, 16, 9, 0)


def test_gate_blocks_before_event_end(app, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    gate = AttendanceGate(db.session)

    with pytest.raises(NotYetEligible) as exc:
        gate.eligible_registrations(event, now=ENDED_END)
    assert exc.value.event_end_date == ENDED_END
    assert exc.value.payload() == {"eventEndDate": ENDED_END.isoformat()}

    with pytest.raises(NotYetEligible):
        gate.ensure_ended(event, now=datetime(2024, 3, 15, 12, 0))
    gate.ensure_ended(event, now=AFTER_END)


def test_gate_returns_confirmed_checked_in_only(app, make_event, add_participant):
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")
    add_participant(event, "No Show", checked_in=False)
    grace = add_participant(event, "Grace Hopper")
    cancelled = add_participant(event, "Late Cancel", status="cancelled")

    other_event = make_event(title="Other")
    add_participant(other_event, "Elsewhere")

    eligible = AttendanceGate(db.session).eligible_registrations(event, now=AFTER_END)
    assert [r.id for r in eligible] == [ada.id, grace.id]
    assert cancelled.id not in [r.id for r in eligible]


def test_gate_filters_by_registration_ids(app, make_event, add_participant):
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")
    grace = add_participant(event, "Grace Hopper")
    no_show = add_participant(event, "No Show", checked_in=False)
    gate = AttendanceGate(db.session)

    assert [r.id for r in gate.eligible_registrations(event, [grace.id], AFTER_END)] == [
        grace.id
    ]
    # an empty filter means everyone
    assert [r.id for r in gate.eligible_registrations(event, [], AFTER_END)] == [
        ada.id,
        grace.id,
    ]
    with pytest.raises(NoEligibleParticipants):
        gate.eligible_registrations(event, [no_show.id], AFTER_END)


def test_gate_no_attendees(app, make_event, add_participant):
    event = make_event()
    add_participant(event, "No Show", checked_in=False)
    with pytest.raises(NoEligibleParticipants):
        AttendanceGate(db.session).eligible_registrations(event, now=AFTER_END)


def test_check_in_once(app, make_event, make_user, add_participant):
    staff = make_user("staff")
    event = make_event()
    registration = add_participant(event, "Ada Lovelace", checked_in=False)
    when = datetime(2024, 3, 14, 9, 30)

    record = check_in(db.session, event, registration, staff_user=staff, now=when)
    assert record.checked_in_at == when
    assert record.checked_in_by_id == staff.id
    assert record.status == "checked_in"

    with pytest.raises(AlreadyCheckedIn) as exc:
        check_in(db.session, event, registration, staff_user=staff)
    assert exc.value.checked_in_at == when
    assert Attendance.query.filter_by(registration_id=registration.id).count() == 1


def test_check_in_requires_confirmed_registration(app, make_event, add_participant):
    event = make_event()
    pending = add_participant(event, "Pending Person", status="pending", checked_in=False)
    with pytest.raises(AttendanceValidationError):
        check_in(db.session, event, pending)


def test_check_in_rejects_other_event(app, make_event, add_participant):
    event = make_event()
    other = make_event(title="Other")
    registration = add_participant(other, "Ada Lovelace", checked_in=False)
    with pytest.raises(AttendanceValidationError):
        check_in(db.session, event, registration)
