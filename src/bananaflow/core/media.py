"""
Media helpers for the encoded image blobs that flow along edges.

Node data stores images as data URLs (``data:image/png;base64,...``) or,
for older workflows, as bare base64 strings.
"""

from __future__ import annotations

import base64
import binascii
from io import BytesIO

from PIL import Image, ImageDraw, UnidentifiedImageError


DEFAULT_MIME_TYPE = "image/png"
MARKER_COLOR = (255, 0, 0)


def clean_base64(data: str) -> str:
    """Strip a data URL header, leaving the base64 payload."""
    if "," in data:
        return data.split(",", 1)[1]
    return data


def format_data_url(data: str, mime_type: str = DEFAULT_MIME_TYPE) -> str:
    """Return ``data`` as a data URL, adding a header if missing."""
    if data.startswith("data:image"):
        return data
    return f"data:{mime_type};base64,{data}"


def mime_type_of(data: str) -> str:
    """
    Determine the mime type of an encoded image.

    Uses the data URL header when present, otherwise sniffs the decoded
    bytes with Pillow. Falls back to PNG for anything unreadable.
    """
    if data.startswith("data:"):
        header = data[5:].split(",", 1)[0]
        mime = header.split(";", 1)[0]
        if mime:
            return mime

    try:
        raw = base64.b64decode(clean_base64(data), validate=False)
        with Image.open(BytesIO(raw)) as img:
            fmt = img.format
    except (binascii.Error, ValueError, UnidentifiedImageError):
        return DEFAULT_MIME_TYPE

    if not fmt:
        return DEFAULT_MIME_TYPE
    return Image.MIME.get(fmt, DEFAULT_MIME_TYPE)


def inline_part(data: str) -> dict[str, dict[str, str]]:
    """Build an ``inlineData`` content part for an encoded image."""
    return {
        "inlineData": {
            "mimeType": mime_type_of(data),
            "data": clean_base64(data),
        }
    }


def mark_point(data: str, x: float, y: float) -> str:
    """
    Draw a red ring with a dot at (``x``%, ``y``%) of an encoded image.

    Returns the marked image as a PNG data URL. Raises ``ValueError`` when
    the data cannot be decoded as an image.
    """
    try:
        raw = base64.b64decode(clean_base64(data), validate=False)
        with Image.open(BytesIO(raw)) as img:
            marked = img.convert("RGB")
    except (binascii.Error, UnidentifiedImageError) as e:
        raise ValueError(f"Cannot read image: {e}") from e

    width, height = marked.size
    px = x / 100 * width
    py = y / 100 * height
    radius = max(width, height) * 0.025
    line_width = max(3, round(radius * 0.2))
    dot = max(2.0, radius * 0.2)

    draw = ImageDraw.Draw(marked)
    draw.ellipse(
        (px - radius, py - radius, px + radius, py + radius),
        outline=MARKER_COLOR,
        width=line_width,
    )
    draw.ellipse((px - dot, py - dot, px + dot, py + dot), fill=MARKER_COLOR)

    buf = BytesIO()
    marked.save(buf, format="PNG")
    return format_data_url(base64.b64encode(buf.getvalue()).decode("ascii"), "image/png")
