from __future__ import annotations

import logging
import os
import uuid
from typing import Mapping

from werkzeug.utils import secure_filename

from ..models import TEMPLATE_KINDS, Certificate, CertificateTemplate, Event
from ..shared.certificates import DATA_FIELD_KEYS, extract_placeholders
from ..shared.certificates_layout import CONTENT_TYPES, TEMPLATE_EXTENSIONS
from ..shared.errors import RenderError, StorageUnavailable, TemplateMappingError

logger = logging.getLogger("eventdesk.certificates")


def create_template(
    session,
    storage,
    event: Event | None,
    name: str,
    kind: str,
    file_name: str,
    content: bytes,
) -> CertificateTemplate:
    kind = (kind or "").strip().lower()
    if kind not in TEMPLATE_KINDS:
        raise TemplateMappingError(f"Unsupported template kind: {kind!r}")
    safe_name = secure_filename(file_name or "")
    ext = os.path.splitext(safe_name)[1].lower()
    allowed = TEMPLATE_EXTENSIONS[kind]
    if not safe_name or ext not in allowed:
        raise TemplateMappingError(
            f"{kind} templates must be one of: {', '.join(allowed)}"
        )
    if not content:
        raise TemplateMappingError("Template file is empty")

    placeholders: list[str] = []
    if kind == "document":
        try:
            placeholders = extract_placeholders(content)
        except RenderError as exc:
            raise TemplateMappingError(str(exc)) from exc

    key = f"templates/{uuid.uuid4().hex}/{safe_name}"
    storage.put(key, content, CONTENT_TYPES.get(ext.lstrip("."), "application/octet-stream"))

    template = CertificateTemplate(
        event_id=event.id if event else None,
        name=(name or "").strip() or os.path.splitext(safe_name)[0],
        kind=kind,
        file_name=safe_name,
        storage_key=key,
        placeholders=placeholders,
        placeholder_mapping={p: "" for p in placeholders},
    )
    session.add(template)
    session.commit()
    logger.info(
        "[CERT-TEMPLATE] created id=%s kind=%s event=%s placeholders=%s",
        template.id,
        kind,
        template.event_id,
        len(placeholders),
    )
    return template


def update_mapping(
    session, template: CertificateTemplate, mapping: Mapping[str, str]
) -> CertificateTemplate:
    if not isinstance(mapping, Mapping):
        raise TemplateMappingError("placeholderMapping must be an object")
    known = set(template.placeholders or [])
    unknown_placeholders = sorted(set(mapping) - known)
    if unknown_placeholders:
        raise TemplateMappingError(
            f"Unknown placeholders: {', '.join(unknown_placeholders)}"
        )
    bad_fields = sorted(
        str(value)
        for value in mapping.values()
        if value and value not in DATA_FIELD_KEYS
    )
    if bad_fields:
        raise TemplateMappingError(f"Unknown data fields: {', '.join(bad_fields)}")

    merged = dict(template.placeholder_mapping or {})
    merged.update({key: value or "" for key, value in mapping.items()})
    template.placeholder_mapping = merged
    session.commit()
    return template


def delete_template(session, storage, template: CertificateTemplate) -> None:
    """Remove the template row, then its stored asset.

    Certificates issued from the template keep their artifacts and lose only
    the reference.
    """
    template_id, key = template.id, template.storage_key
    session.query(Certificate).filter_by(template_id=template_id).update(
        {"template_id": None}, synchronize_session=False
    )
    session.delete(template)
    session.commit()
    logger.info("[CERT-TEMPLATE] deleted id=%s key=%s", template_id, key)

    if not key:
        return
    try:
        storage.delete(key)
    except StorageUnavailable as exc:
        # the row is gone; a leftover asset is harmless
        logger.warning(
            "[CERT-TEMPLATE] asset delete failed id=%s key=%s: %s", template_id, key, exc
        )


def unmapped_placeholders(template: CertificateTemplate | None) -> list[str]:
    if template is None or template.kind != "document":
        return []
    mapping = template.placeholder_mapping or {}
    return sorted(p for p in template.placeholders or [] if not mapping.get(p))


def template_payload(template: CertificateTemplate) -> dict:
    return {
        "id": template.id,
        "eventId": template.event_id,
        "name": template.name,
        "kind": template.kind,
        "fileName": template.file_name,
        "placeholders": list(template.placeholders or []),
        "placeholderMapping": dict(template.placeholder_mapping or {}),
        "isGlobal": template.event_id is None,
    }
