from __future__ import annotations

CANVAS_SIZE: tuple[int, int] = (1200, 800)

BACKGROUND_COLOR = "#ffffff"
TITLE_COLOR = "#2c3e50"
TEXT_COLOR = "#34495e"
ACCENT_COLOR = "#3498db"

OUTER_BORDER = {"inset": 20, "width": 8, "color": ACCENT_COLOR}
INNER_BORDER = {"inset": 40, "width": 2, "color": TITLE_COLOR}

FONT_PATHS = {
    "regular": "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "bold": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
}

TITLE_TEXT = "CERTIFICATE OF PARTICIPATION"
CERTIFY_TEXT = "This is to certify that"
PARTICIPATED_TEXT = "has successfully participated in"

# (key, baseline y, font weight, size px, color); key is a literal or a data field
CENTERED_LINES: list[tuple[str, int, str, int, str]] = [
    ("title", 150, "bold", 48, TITLE_COLOR),
    ("certify", 220, "regular", 24, TEXT_COLOR),
    ("participant_name", 300, "bold", 36, TITLE_COLOR),
    ("participated", 360, "regular", 20, TEXT_COLOR),
    ("event_title", 420, "bold", 24, ACCENT_COLOR),
    ("held_on", 480, "regular", 20, TEXT_COLOR),
]

FOOTER_FONT_SIZE = 16
FOOTER_MARGIN = 60

TEMPLATE_EXTENSIONS = {
    "document": (".pptx",),
    "raster": (".png", ".jpg", ".jpeg"),
}

CONTENT_TYPES = {
    "png": "image/png",
    "pdf": "application/pdf",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
}
