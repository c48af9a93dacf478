import os
import pathlib
import sys
from datetime import datetime

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventdesk.app import create_app, db
from eventdesk.models import Attendance, Event, Registration, User

ENDED_START = datetime(2024, 3, 14, 9, 0)
ENDED_END = datetime(2024, 3, 15, 17, 0)
AFTER_END = datetime(2024, 3, 16, 9, 0)


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("SITE_ROOT", str(tmp_path))
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://events.example.com")
    application = create_app(
        {
            "TESTING": True,
            # a binary that never exists keeps document rendering off the host's soffice
            "CONVERTER_BINARY": str(tmp_path / "no-such-soffice"),
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, user_id):
    with client.session_transaction() as sess:
        sess.clear()
        sess["user_id"] = user_id


@pytest.fixture
def login_as(client):
    def _login(user):
        login(client, user.id)
        return client

    return _login


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role="organizer", email=None, **kwargs):
        counter["n"] += 1
        user = User(
            email=email or f"{role}{counter['n']}@example.com",
            full_name=kwargs.pop("full_name", f"{role.title()} {counter['n']}"),
            role=role,
            **kwargs,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_event(app):
    def _make(organizer=None, start=ENDED_START, end=ENDED_END, **kwargs):
        event = Event(
            title=kwargs.pop("title", "Tech Conference 2024"),
            description=kwargs.pop("description", "Annual technology conference"),
            location=kwargs.pop("location", "Hall A"),
            start_date=start,
            end_date=end,
            organizer_id=organizer.id if organizer else None,
            **kwargs,
        )
        db.session.add(event)
        db.session.commit()
        return event

    return _make


@pytest.fixture
def add_participant(app):
    def _add(event, name, status="confirmed", checked_in=True, checked_in_at=None):
        slug = name.lower().replace(" ", ".")
        registration = Registration(
            event_id=event.id,
            name=name,
            email=f"{slug}@example.com",
            status=status,
        )
        db.session.add(registration)
        db.session.flush()
        if checked_in:
            db.session.add(
                Attendance(
                    event_id=event.id,
                    registration_id=registration.id,
                    checked_in_at=checked_in_at or event.start_date,
                )
            )
        db.session.commit()
        return registration

    return _add
