import json
import stat
from datetime import datetime

import pytest

from eventdesk.app import db, get_converter, get_storage
from eventdesk.models import Certificate
from eventdesk.services.issuance import build_ledger
from manage import check_converter, issue_certs, purge_orphan_certs, verify_cert


@pytest.fixture
def runner(app):
    for command in (issue_certs, verify_cert, check_converter, purge_orphan_certs):
        app.cli.add_command(command)
    return app.test_cli_runner()


def _setup_files(app, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    ledger = build_ledger(db.session, get_storage(), get_converter(), app.config)
    ledger.issue_all(event, now=datetime(2024, 3, 16, 9, 0))
    kept_key = Certificate.query.one().storage_key
    orphan_key = f"certificates/{event.id}/CERT-DEADBEEFDEADBEEF.png"
    get_storage().put(orphan_key, b"orphan")
    get_storage().put("templates/abc/cert.pptx", b"template")
    return kept_key, orphan_key


def test_purge_orphan_certs_cli(app, runner, make_event, add_participant):
    kept, orphan = _setup_files(app, make_event, add_participant)
    storage = get_storage()

    res = runner.invoke(args=["purge_orphan_certs", "--dry-run"])
    assert orphan in res.output
    assert "scanned=2 deleted=0 kept=1 errors=0" in res.output
    assert storage.exists(orphan)

    res = runner.invoke(args=["purge_orphan_certs"])
    assert res.exit_code == 0
    assert "deleted=1" in res.output
    assert not storage.exists(orphan)
    assert storage.exists(kept)
    assert storage.exists("templates/abc/cert.pptx")


def test_purge_refuses_in_production(app, runner, make_event, add_participant, monkeypatch):
    _, orphan = _setup_files(app, make_event, add_participant)
    monkeypatch.delenv("ALLOW_CERT_PURGE", raising=False)
    app.config["ENV"] = "production"

    res = runner.invoke(args=["purge_orphan_certs"])
    assert "Refusing to delete" in res.output
    assert get_storage().exists(orphan)

    monkeypatch.setenv("ALLOW_CERT_PURGE", "1")
    res = runner.invoke(args=["purge_orphan_certs"])
    assert not get_storage().exists(orphan)


def test_issue_certs_and_verify(app, runner, make_event, add_participant):
    event = make_event()
    add_participant(event, "Ada Lovelace")
    add_participant(event, "Grace Hopper")

    res = runner.invoke(args=["issue_certs", "--event", str(event.id)])
    assert res.exit_code == 0, res.output
    assert "generated=2 skipped=0 failed=0 total=2" in res.output

    res = runner.invoke(args=["issue_certs", "--event", str(event.id)])
    assert "generated=0 skipped=2" in res.output

    code = Certificate.query.first().certificate_code
    res = runner.invoke(args=["verify_cert", code])
    assert res.exit_code == 0
    assert json.loads(res.output)["code"] == code

    res = runner.invoke(args=["verify_cert", "CERT-0000000000000000"])
    assert res.exit_code == 1
    assert "Not found" in res.output


def test_issue_certs_unknown_event(runner):
    res = runner.invoke(args=["issue_certs", "--event", "999"])
    assert res.exit_code == 1


def test_check_converter(app, runner, tmp_path):
    res = runner.invoke(args=["check_converter"])
    assert res.exit_code == 1

    binary = tmp_path / "soffice"
    binary.write_text("#!/bin/sh\nexit 0\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    get_converter().binary = str(binary)
    res = runner.invoke(args=["check_converter"])
    assert res.exit_code == 0
    assert str(binary) in res.output
