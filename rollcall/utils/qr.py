"""
Identifier codec.

The scannable payload is the PRN itself; ``render`` turns it into a QR PNG
and ``decode`` reads a camera frame (or any image) back to text.
decode(render(encode(prn))) == prn for the PRN alphabet in use.
"""
from __future__ import annotations

import base64
import io
import logging
from typing import Optional

import cv2
import numpy as np
import qrcode
from qrcode.constants import ERROR_CORRECT_H

logger = logging.getLogger(__name__)

DARK = "#1e293b"
LIGHT = "#ffffff"


def encode(prn: str) -> str:
    """Scannable payload for a PRN. Pure function of the PRN."""
    return (prn or "").strip()


def render(payload: str, box_size: int = 8, border: int = 4) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color=DARK, back_color=LIGHT)

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_data_url(payload: str, box_size: int = 8) -> str:
    png = render(payload, box_size=box_size)
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def decode(image_bytes: bytes) -> Optional[str]:
    """Return the text of the first QR code in the image, or None."""
    if not image_bytes:
        return None

    nparr = np.frombuffer(image_bytes, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if image is None:
        logger.warning("Could not decode image bytes (%d bytes)", len(image_bytes))
        return None

    text, _points, _ = cv2.QRCodeDetector().detectAndDecode(image)
    return text.strip() if text else None
