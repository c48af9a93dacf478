import json
import os
import re
from datetime import datetime

import pytest

from eventdesk.app import db, get_converter, get_storage
from eventdesk.models import AuditLog, Certificate, CertificateTemplate
from eventdesk.services.issuance import (
    ORPHAN_ACTION,
    CertificateLedger,
    build_ledger,
)
from eventdesk.services.verification import VerificationLookup
from eventdesk.shared.certificates import ArtifactRenderer
from eventdesk.shared.errors import (
    NoEligibleParticipants,
    NotYetEligible,
    RenderError,
    TemplateNotFound,
)

AFTER_END = datetime(2024, 3, 16, 9, 0)


@pytest.fixture
def ledger(app):
    return build_ledger(db.session, get_storage(), get_converter(), app.config)


def _files(tmp_path, event_id):
    folder = tmp_path / "files" / "certificates" / str(event_id)
    return sorted(os.listdir(folder)) if folder.exists() else []


def test_issue_all_generates_for_attendees(app, ledger, tmp_path, make_user, make_event, add_participant):
    organizer = make_user("organizer")
    event = make_event(organizer)
    ada = add_participant(event, "Ada Lovelace")
    grace = add_participant(event, "Grace Hopper")
    add_participant(event, "No Show", checked_in=False)

    result = ledger.issue_all(event, issued_by=organizer, now=AFTER_END)

    assert (result.generated, result.skipped, result.total) == (2, 0, 2)
    assert result.errors == []
    assert [c["participant"] for c in result.certificates] == ["Ada Lovelace", "Grace Hopper"]

    certs = Certificate.query.order_by(Certificate.registration_id).all()
    assert [c.registration_id for c in certs] == [ada.id, grace.id]
    for cert in certs:
        assert re.fullmatch(r"CERT-[0-9A-F]{16}", cert.certificate_code)
        assert cert.storage_key == f"certificates/{event.id}/{cert.certificate_code}.png"
        assert cert.file_url == f"/files/{cert.storage_key}"
        assert cert.issued_at == AFTER_END
        assert cert.issued_by_id == organizer.id
        assert cert.file_format == "png"
    assert _files(tmp_path, event.id) == sorted(
        f"{c.certificate_code}.png" for c in certs
    )


def test_issue_all_is_idempotent(app, ledger, tmp_path, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    add_participant(event, "Grace Hopper")

    first = ledger.issue_all(event, now=AFTER_END)
    codes = {c.certificate_code for c in Certificate.query.all()}
    files = _files(tmp_path, event.id)

    second = ledger.issue_all(event, now=AFTER_END)
    assert (second.generated, second.skipped, second.total) == (0, 2, 2)
    assert second.certificates == []
    assert {c.certificate_code for c in Certificate.query.all()} == codes
    assert _files(tmp_path, event.id) == files
    assert first.generated == 2


def test_issue_all_before_end_writes_nothing(app, ledger, tmp_path, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    with pytest.raises(NotYetEligible):
        ledger.issue_all(event, now=datetime(2024, 3, 15, 12, 0))
    assert Certificate.query.count() == 0
    assert _files(tmp_path, event.id) == []


def test_issue_all_without_attendees(app, ledger, make_event, add_participant):
    event = make_event()
    add_participant(event, "No Show", checked_in=False)
    with pytest.raises(NoEligibleParticipants):
        ledger.issue_all(event, now=AFTER_END)
    assert Certificate.query.count() == 0


def test_issue_all_respects_registration_filter(app, ledger, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    grace = add_participant(event, "Grace Hopper")
    result = ledger.issue_all(event, registration_ids=[grace.id], now=AFTER_END)
    assert (result.generated, result.total) == (1, 1)
    assert [c.registration_id for c in Certificate.query.all()] == [grace.id]


class FlakyRenderer(ArtifactRenderer):
    def __init__(self, storage, fail_for):
        super().__init__(storage)
        self.fail_for = fail_for

    def render(self, data, template=None):
        if data.participant_name == self.fail_for:
            raise RenderError("font cache corrupted")
        return super().render(data, template)


def test_issue_all_records_item_failures(app, make_event, add_participant, caplog):
    caplog.set_level("ERROR", logger="eventdesk.certificates")
    storage = get_storage()
    ledger = CertificateLedger(db.session, storage, FlakyRenderer(storage, "Grace Hopper"))
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")
    grace = add_participant(event, "Grace Hopper")
    alan = add_participant(event, "Alan Turing")

    result = ledger.issue_all(event, now=AFTER_END)

    assert (result.generated, result.total) == (2, 3)
    assert result.errors == [
        {
            "registration_id": grace.id,
            "participant": "Grace Hopper",
            "error": "font cache corrupted",
        }
    ]
    issued = {c.registration_id for c in Certificate.query.all()}
    assert issued == {ada.id, alan.id}
    assert "[CERT-FAIL]" in caplog.text


class RacingLedger(CertificateLedger):
    """Misses the pre-check once, as if another worker inserted concurrently."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookups = 0

    def _existing(self, event_id, registration_id):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return super()._existing(event_id, registration_id)


def test_concurrent_insert_is_skipped_and_orphan_logged(app, tmp_path, make_event, add_participant, caplog):
    caplog.set_level("WARNING", logger="eventdesk.certificates")
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")
    winner = Certificate(
        event_id=event.id,
        registration_id=ada.id,
        certificate_code="CERT-00000000000000AA",
        storage_key=f"certificates/{event.id}/CERT-00000000000000AA.png",
        file_url="/files/winner.png",
        file_format="png",
        issued_at=AFTER_END,
    )
    db.session.add(winner)
    db.session.commit()

    storage = get_storage()
    ledger = RacingLedger(db.session, storage, ArtifactRenderer(storage))
    outcome = ledger.issue(event, ada, now=AFTER_END)

    assert outcome.status == "skipped"
    assert outcome.certificate.certificate_code == "CERT-00000000000000AA"
    assert Certificate.query.count() == 1

    audit = AuditLog.query.filter_by(action=ORPHAN_ACTION).one()
    details = json.loads(audit.details)
    assert audit.registration_id == ada.id
    assert details["storage_key"].startswith(f"certificates/{event.id}/CERT-")
    # the artifact written before the failed insert is left for the purge command
    assert storage.exists(details["storage_key"])
    assert "[CERT-ORPHAN]" in caplog.text


def test_resolve_template_scoping(app, ledger, make_event):
    event = make_event()
    other = make_event(title="Other")
    own = CertificateTemplate(event_id=event.id, name="Own", kind="raster")
    shared = CertificateTemplate(event_id=None, name="Global", kind="raster")
    foreign = CertificateTemplate(event_id=other.id, name="Foreign", kind="raster")
    db.session.add_all([own, shared, foreign])
    db.session.commit()

    assert ledger.resolve_template(event, None) is None
    assert ledger.resolve_template(event, "default") is None
    assert ledger.resolve_template(event, own.id) is own
    assert ledger.resolve_template(event, str(shared.id)) is shared
    with pytest.raises(TemplateNotFound):
        ledger.resolve_template(event, foreign.id)
    with pytest.raises(TemplateNotFound):
        ledger.resolve_template(event, 9999)
    with pytest.raises(TemplateNotFound):
        ledger.resolve_template(event, "abc")


def test_certificate_data_fields(app, ledger, make_user, make_event, add_participant):
    organizer = make_user("organizer", full_name="Event Management Inc.")
    event = make_event(organizer)
    ada = add_participant(event, "Ada Lovelace", checked_in_at=datetime(2024, 3, 14, 9, 5))

    captured = {}

    class CapturingRenderer(ArtifactRenderer):
        def render(self, data, template=None):
            captured.update(data.as_fields())
            return super().render(data, template)

    ledger.renderer = CapturingRenderer(get_storage())
    outcome = ledger.issue(event, ada, now=AFTER_END, serial=4)

    assert captured["participant_name"] == "Ada Lovelace"
    assert captured["event_organizer"] == "Event Management Inc."
    assert captured["event_date_range"] == "March 14, 2024 - March 15, 2024"
    assert captured["attendance_date"] == "March 14, 2024"
    assert captured["certificate_issue_date"] == "March 16, 2024"
    assert captured["certificate_serial"] == "004"
    assert captured["certificate_code"] == outcome.certificate.certificate_code
    assert captured["certificate_url"] == (
        "https://events.example.com/certificate/verify?code="
        + outcome.certificate.certificate_code
    )


def test_issue_twice_keeps_one_record(app, ledger, make_event, add_participant):
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")

    first = ledger.issue(event, ada, now=AFTER_END)
    second = ledger.issue(event, ada, now=AFTER_END)

    assert (first.status, second.status) == ("generated", "skipped")
    assert second.certificate.id == first.certificate.id
    assert Certificate.query.filter_by(registration_id=ada.id).count() == 1


def test_issued_certificate_verifies(app, ledger, make_event, add_participant):
    event = make_event(title="Data Summit")
    add_participant(event, "Ada Lovelace")

    result = ledger.issue_all(event, now=AFTER_END)
    assert (result.generated, result.total, result.errors) == (1, 1, [])

    code = result.certificates[0]["certificateCode"]
    projection = VerificationLookup(db.session, get_storage()).verify(code)
    assert projection["participantName"] == "Ada Lovelace"
    assert projection["event"]["title"] == "Data Summit"


def test_issue_before_event_end_writes_nothing(app, ledger, tmp_path, make_event, add_participant):
    event = make_event()
    ada = add_participant(event, "Ada Lovelace")

    with pytest.raises(NotYetEligible) as excinfo:
        ledger.issue(event, ada, now=datetime(2024, 3, 15, 12, 0))

    assert excinfo.value.event_end_date == event.end_date
    assert Certificate.query.count() == 0
    assert _files(tmp_path, event.id) == []


@pytest.mark.parametrize("status, checked_in", [("confirmed", False), ("cancelled", True)])
def test_issue_requires_confirmed_check_in(app, ledger, tmp_path, make_event, add_participant, status, checked_in):
    event = make_event()
    walk_in = add_participant(event, "Walk In", status=status, checked_in=checked_in)

    with pytest.raises(NoEligibleParticipants):
        ledger.issue(event, walk_in, now=AFTER_END)

    assert Certificate.query.count() == 0
    assert _files(tmp_path, event.id) == []


def test_issue_rejects_registration_of_other_event(app, ledger, make_event, add_participant):
    event = make_event()
    other = make_event(title="Other")
    stranger = add_participant(other, "Stranger")

    with pytest.raises(NoEligibleParticipants):
        ledger.issue(event, stranger, now=AFTER_END)
    assert Certificate.query.count() == 0
