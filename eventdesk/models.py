from __future__ import annotations

from sqlalchemy.orm import validates

from .app import db

REGISTRATION_STATUSES = ("pending", "confirmed", "cancelled")
ATTENDANCE_CHECKED_IN = "checked_in"
TEMPLATE_KINDS = ("raster", "document")


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    organization_name = db.Column(db.String(255))
    role = db.Column(
        db.String(20), nullable=False, default="participant", server_default="participant"
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.Index("ix_users_email_lower", db.func.lower(email), unique=True),
    )

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return value.lower()

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    location = db.Column(db.String(255))
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    organizer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    status = db.Column(
        db.String(16), nullable=False, default="published", server_default="published"
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    organizer = db.relationship("User")
    registrations = db.relationship(
        "Registration",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Registration.id",
    )


class Registration(db.Model):
    __tablename__ = "registrations"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer,
        db.ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    status = db.Column(
        db.String(16), nullable=False, default="pending", server_default="pending"
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    event = db.relationship("Event", back_populates="registrations")
    user = db.relationship("User")
    attendance = db.relationship(
        "Attendance", back_populates="registration", uselist=False
    )

    @validates("status")
    def check_status(self, key, value):
        if value not in REGISTRATION_STATUSES:
            raise ValueError(f"Unsupported registration status: {value!r}")
        return value


class Attendance(db.Model):
    __tablename__ = "attendance"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    registration_id = db.Column(
        db.Integer,
        db.ForeignKey("registrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    status = db.Column(
        db.String(16),
        nullable=False,
        default=ATTENDANCE_CHECKED_IN,
        server_default=ATTENDANCE_CHECKED_IN,
    )
    checked_in_at = db.Column(db.DateTime, nullable=False)
    checked_in_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    __table_args__ = (
        db.UniqueConstraint(
            "event_id", "registration_id", name="uix_attendance_event_registration"
        ),
    )

    registration = db.relationship("Registration", back_populates="attendance")
    checked_in_by = db.relationship("User")


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.Integer, primary_key=True)
    # NULL event_id marks a global template usable by any event
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=True
    )
    name = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="raster")
    file_name = db.Column(db.String(255))
    storage_key = db.Column(db.String(512))
    placeholders = db.Column(db.JSON, nullable=False, default=list)
    placeholder_mapping = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    event = db.relationship("Event")


class Certificate(db.Model):
    __tablename__ = "certificates"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    registration_id = db.Column(
        db.Integer,
        db.ForeignKey("registrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    certificate_code = db.Column(db.String(64), nullable=False, unique=True)
    storage_key = db.Column(db.String(512), nullable=False)
    file_url = db.Column(db.String(2048), nullable=False)
    file_format = db.Column(db.String(8), nullable=False)
    issued_at = db.Column(db.DateTime, nullable=False)
    issued_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    __table_args__ = (
        db.UniqueConstraint(
            "event_id",
            "registration_id",
            name="uix_certificate_event_registration",
        ),
    )

    event = db.relationship("Event")
    registration = db.relationship("Registration")
    template = db.relationship("CertificateTemplate")


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    registration_id = db.Column(
        db.Integer,
        db.ForeignKey("registrations.id", ondelete="SET NULL"),
        nullable=True,
    )
    action = db.Column(db.String(255), nullable=False)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
