from __future__ import annotations

import logging
import re
import secrets
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Mapping
from xml.sax.saxutils import escape

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .certificates_layout import (
    BACKGROUND_COLOR,
    CANVAS_SIZE,
    CENTERED_LINES,
    CERTIFY_TEXT,
    CONTENT_TYPES,
    FONT_PATHS,
    FOOTER_FONT_SIZE,
    FOOTER_MARGIN,
    INNER_BORDER,
    OUTER_BORDER,
    PARTICIPATED_TEXT,
    TEXT_COLOR,
    TITLE_TEXT,
)
from .converter import Converter
from .errors import ConverterError, RenderError, StorageKeyNotFound
from .time import fmt_date_range, fmt_long_date

logger = logging.getLogger("eventdesk.certificates")

CODE_PREFIX = "CERT-"
CODE_PATTERN = re.compile(r"^CERT-[0-9A-F]{16}$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
SLIDE_MEMBER_PATTERN = re.compile(r"^ppt/slides/slide[^/]*\.xml$")

AVAILABLE_DATA_FIELDS: list[dict[str, str]] = [
    {
        "key": "participant_name",
        "label": "Participant Name",
        "description": "Full name of the participant",
        "category": "participant",
        "dataType": "text",
        "example": "John Doe",
    },
    {
        "key": "participant_email",
        "label": "Participant Email",
        "description": "Email address of the participant",
        "category": "participant",
        "dataType": "email",
        "example": "john@example.com",
    },
    {
        "key": "participant_organization",
        "label": "Participant Organization",
        "description": "Organization of the participant's account",
        "category": "participant",
        "dataType": "text",
        "example": "Tech Corp",
    },
    {
        "key": "event_title",
        "label": "Event Title",
        "description": "Name of the event",
        "category": "event",
        "dataType": "text",
        "example": "Tech Conference 2025",
    },
    {
        "key": "event_description",
        "label": "Event Description",
        "description": "Event description",
        "category": "event",
        "dataType": "text",
        "example": "Annual technology conference",
    },
    {
        "key": "event_location",
        "label": "Event Location",
        "description": "Event venue or location",
        "category": "event",
        "dataType": "text",
        "example": "New York Convention Center",
    },
    {
        "key": "event_date",
        "label": "Event Date",
        "description": "Date the event was held",
        "category": "event",
        "dataType": "text",
        "example": "January 15, 2025",
    },
    {
        "key": "event_start_date",
        "label": "Event Start Date",
        "description": "Event start date",
        "category": "event",
        "dataType": "date",
        "example": "January 15, 2025",
    },
    {
        "key": "event_end_date",
        "label": "Event End Date",
        "description": "Event end date",
        "category": "event",
        "dataType": "date",
        "example": "January 17, 2025",
    },
    {
        "key": "event_date_range",
        "label": "Event Date Range",
        "description": "Complete date range",
        "category": "event",
        "dataType": "text",
        "example": "January 15, 2025 - January 17, 2025",
    },
    {
        "key": "event_organizer",
        "label": "Event Organizer",
        "description": "Name of the event organizer",
        "category": "event",
        "dataType": "text",
        "example": "Event Management Inc.",
    },
    {
        "key": "registration_date",
        "label": "Registration Date",
        "description": "Date when participant registered",
        "category": "registration",
        "dataType": "date",
        "example": "December 1, 2024",
    },
    {
        "key": "attendance_date",
        "label": "Attendance Date",
        "description": "Date when participant checked in",
        "category": "registration",
        "dataType": "date",
        "example": "January 15, 2025",
    },
    {
        "key": "registration_id",
        "label": "Registration ID",
        "description": "Registration identifier",
        "category": "registration",
        "dataType": "text",
        "example": "12345",
    },
    {
        "key": "certificate_code",
        "label": "Certificate Code",
        "description": "Unique certificate verification code",
        "category": "system",
        "dataType": "text",
        "example": "CERT-9F2C4A1B7E3D5C60",
    },
    {
        "key": "certificate_issue_date",
        "label": "Certificate Issue Date",
        "description": "Date when certificate was issued",
        "category": "system",
        "dataType": "date",
        "example": "January 20, 2025",
    },
    {
        "key": "certificate_serial",
        "label": "Certificate Serial Number",
        "description": "Position of the certificate within its batch",
        "category": "system",
        "dataType": "number",
        "example": "001",
    },
    {
        "key": "certificate_url",
        "label": "Certificate URL",
        "description": "URL for certificate verification",
        "category": "system",
        "dataType": "text",
        "example": "https://events.example.com/certificate/verify?code=CERT-9F2C4A1B7E3D5C60",
    },
]

DATA_FIELD_KEYS = frozenset(item["key"] for item in AVAILABLE_DATA_FIELDS)


def generate_certificate_code() -> str:
    """Return ``CERT-`` followed by 16 uppercase hex characters (64 random bits)."""
    return f"{CODE_PREFIX}{secrets.token_hex(8).upper()}"


def normalize_certificate_code(code: str | None) -> str | None:
    cleaned = (code or "").strip().upper()
    return cleaned if CODE_PATTERN.match(cleaned) else None


@dataclass
class CertificateData:
    participant_name: str
    participant_email: str
    event_title: str
    event_date: str
    certificate_code: str
    issue_date: str
    event_description: str = ""
    event_location: str = ""
    organizer_name: str = ""
    participant_organization: str = ""
    event_start_date: str = ""
    event_end_date: str = ""
    event_date_range: str = ""
    registration_date: str = ""
    attendance_date: str = ""
    registration_id: str = ""
    certificate_serial: str = ""
    certificate_url: str = ""

    def as_fields(self) -> dict[str, str]:
        return {
            "participant_name": self.participant_name,
            "participant_email": self.participant_email,
            "participant_organization": self.participant_organization,
            "event_title": self.event_title,
            "event_description": self.event_description,
            "event_location": self.event_location,
            "event_date": self.event_date,
            "event_start_date": self.event_start_date,
            "event_end_date": self.event_end_date,
            "event_date_range": self.event_date_range,
            "event_organizer": self.organizer_name,
            "registration_date": self.registration_date,
            "attendance_date": self.attendance_date,
            "registration_id": self.registration_id,
            "certificate_code": self.certificate_code,
            "certificate_issue_date": self.issue_date,
            "certificate_serial": self.certificate_serial,
            "certificate_url": self.certificate_url,
        }


def build_certificate_data(
    event,
    registration,
    code: str,
    issued_at: datetime,
    public_base_url: str = "",
    serial: int = 1,
) -> CertificateData:
    organizer = event.organizer
    user = registration.user
    attendance = registration.attendance
    base_url = (public_base_url or "").rstrip("/")
    return CertificateData(
        participant_name=registration.name,
        participant_email=registration.email,
        participant_organization=(user.organization_name or "") if user else "",
        event_title=event.title,
        event_description=event.description or "",
        event_location=event.location or "",
        event_date=fmt_date_range(event.start_date, event.end_date),
        event_start_date=fmt_long_date(event.start_date),
        event_end_date=fmt_long_date(event.end_date),
        event_date_range=fmt_date_range(event.start_date, event.end_date),
        organizer_name=organizer.display_name if organizer else "Event Organizer",
        registration_date=fmt_long_date(registration.created_at),
        attendance_date=fmt_long_date(attendance.checked_in_at) if attendance else "",
        registration_id=str(registration.id),
        certificate_code=code,
        issue_date=fmt_long_date(issued_at),
        certificate_serial=str(serial).zfill(3),
        certificate_url=f"{base_url}/certificate/verify?code={code}",
    )


def _load_font(weight: str, size: int):
    try:
        return ImageFont.truetype(FONT_PATHS[weight], size)
    except OSError:
        logger.warning("[CERT] font %s missing; using Pillow default", FONT_PATHS[weight])
        return ImageFont.load_default()


def _text_size(draw: ImageDraw.ImageDraw, text: str, font) -> tuple[int, int]:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    return right - left, bottom - top


def _draw_border(draw: ImageDraw.ImageDraw, size: tuple[int, int], border: dict) -> None:
    width, height = size
    inset = border["inset"]
    draw.rectangle(
        [inset, inset, width - inset, height - inset],
        outline=border["color"],
        width=border["width"],
    )


def render_raster(data: CertificateData, background: bytes | None = None) -> bytes:
    """Render the fixed participation layout to PNG bytes.

    ``background`` is an optional image (PNG/JPEG) stretched over the canvas
    before borders and text are drawn. Identical input gives identical bytes.
    """
    size = CANVAS_SIZE
    if background:
        try:
            with Image.open(BytesIO(background)) as source:
                image = source.convert("RGB").resize(size)
        except (UnidentifiedImageError, OSError) as exc:
            raise RenderError(f"Unreadable raster template: {exc}") from exc
    else:
        image = Image.new("RGB", size, BACKGROUND_COLOR)
    draw = ImageDraw.Draw(image)

    _draw_border(draw, size, OUTER_BORDER)
    _draw_border(draw, size, INNER_BORDER)

    literals = {
        "title": TITLE_TEXT,
        "certify": CERTIFY_TEXT,
        "participated": PARTICIPATED_TEXT,
        "held_on": f"Held on {data.event_date}",
    }
    fields = data.as_fields()
    width, height = size
    for key, baseline, weight, font_size, color in CENTERED_LINES:
        text = literals.get(key, fields.get(key, ""))
        if not text:
            continue
        font = _load_font(weight, font_size)
        text_width, text_height = _text_size(draw, text, font)
        draw.text(
            ((width - text_width) / 2, baseline - text_height),
            text,
            font=font,
            fill=color,
        )

    footer_font = _load_font("regular", FOOTER_FONT_SIZE)
    footer_y = height - FOOTER_MARGIN
    code_text = f"Certificate Code: {data.certificate_code}"
    code_width, code_height = _text_size(draw, code_text, footer_font)
    draw.text(
        (width - FOOTER_MARGIN - code_width, footer_y - code_height),
        code_text,
        font=footer_font,
        fill=TEXT_COLOR,
    )
    issued_text = f"Issued on: {data.issue_date}"
    _, issued_height = _text_size(draw, issued_text, footer_font)
    draw.text(
        (FOOTER_MARGIN, footer_y - issued_height),
        issued_text,
        font=footer_font,
        fill=TEXT_COLOR,
    )

    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def substitute_placeholders(
    xml: str, fields: Mapping[str, str], mapping: Mapping[str, str]
) -> str:
    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        field_key = mapping.get(name)
        value = fields.get(field_key) if field_key else None
        if not value:
            return f"{{{{{name}}}}}"
        return escape(str(value))

    return PLACEHOLDER_PATTERN.sub(_replace, xml)


def _open_template(template_bytes: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(BytesIO(template_bytes))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise RenderError(f"Unreadable document template: {exc}") from exc


def render_document(
    data: CertificateData, template_bytes: bytes, mapping: Mapping[str, str]
) -> bytes:
    """Fill ``{{placeholder}}`` tokens in every slide of a PPTX template."""
    fields = data.as_fields()
    out = BytesIO()
    with _open_template(template_bytes) as source:
        try:
            with zipfile.ZipFile(
                out, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6
            ) as target:
                for info in source.infolist():
                    content = source.read(info.filename)
                    if SLIDE_MEMBER_PATTERN.match(info.filename):
                        xml = content.decode("utf-8")
                        content = substitute_placeholders(xml, fields, mapping).encode(
                            "utf-8"
                        )
                    member = zipfile.ZipInfo(info.filename, date_time=info.date_time)
                    member.external_attr = info.external_attr
                    member.compress_type = zipfile.ZIP_DEFLATED
                    target.writestr(member, content, compresslevel=6)
        except (zipfile.BadZipFile, UnicodeDecodeError, KeyError) as exc:
            raise RenderError(f"Failed to render document certificate: {exc}") from exc
    return out.getvalue()


def extract_placeholders(template_bytes: bytes) -> list[str]:
    found: set[str] = set()
    with _open_template(template_bytes) as source:
        for name in source.namelist():
            if not SLIDE_MEMBER_PATTERN.match(name):
                continue
            xml = source.read(name).decode("utf-8", "replace")
            for match in PLACEHOLDER_PATTERN.finditer(xml):
                placeholder = match.group(1).strip()
                if placeholder:
                    found.add(placeholder)
    return sorted(found)


def printable_pdf(png_bytes: bytes) -> bytes:
    """Place a raster certificate on a landscape A4 page."""
    page_w, page_h = landscape(A4)
    margin = 10 * mm
    image = ImageReader(BytesIO(png_bytes))
    img_w, img_h = image.getSize()
    scale = min((page_w - 2 * margin) / img_w, (page_h - 2 * margin) / img_h)
    draw_w, draw_h = img_w * scale, img_h * scale

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_w, page_h))
    c.drawImage(
        image,
        (page_w - draw_w) / 2,
        (page_h - draw_h) / 2,
        draw_w,
        draw_h,
    )
    c.showPage()
    c.save()
    return buf.getvalue()


@dataclass(frozen=True)
class RenderedArtifact:
    content: bytes
    extension: str
    content_type: str
    mode: str
    warnings: tuple[str, ...] = field(default_factory=tuple)


class ArtifactRenderer:
    """Produces the certificate file for one participant.

    Document templates become PPTX (or PDF via the converter). A failed
    conversion degrades to the raster layout instead of failing the item.
    """

    def __init__(self, storage, converter: Converter | None = None, document_output: str = "pdf"):
        self.storage = storage
        self.converter = converter
        self.document_output = (document_output or "pdf").lower()

    def render(self, data: CertificateData, template=None) -> RenderedArtifact:
        if template is None:
            return self._raster(data)
        if template.kind != "document":
            return self._raster(data, self._load_asset(template))

        pptx = render_document(
            data, self._load_asset(template), template.placeholder_mapping or {}
        )
        if self.document_output != "pdf":
            return RenderedArtifact(pptx, "pptx", CONTENT_TYPES["pptx"], "document")
        if self.converter is None:
            return self._raster(data, warning="no converter configured")
        try:
            pdf = self.converter.convert(pptx, "pptx", "pdf")
        except ConverterError as exc:
            logger.warning(
                "[CERT] conversion failed for code=%s; falling back to raster: %s",
                data.certificate_code,
                exc,
            )
            return self._raster(data, warning=str(exc))
        return RenderedArtifact(pdf, "pdf", CONTENT_TYPES["pdf"], "document")

    def _load_asset(self, template) -> bytes | None:
        if not template.storage_key:
            if template.kind == "document":
                raise RenderError(f"Template {template.id} has no stored asset")
            return None
        try:
            return self.storage.get(template.storage_key)
        except StorageKeyNotFound as exc:
            raise RenderError(
                f"Template asset missing for template {template.id}: {template.storage_key}"
            ) from exc

    def _raster(
        self, data: CertificateData, background: bytes | None = None, warning: str | None = None
    ) -> RenderedArtifact:
        warnings = (warning,) if warning else ()
        return RenderedArtifact(
            render_raster(data, background),
            "png",
            CONTENT_TYPES["png"],
            "raster",
            warnings,
        )
