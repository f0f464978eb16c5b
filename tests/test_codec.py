import cv2
import numpy as np
import pytest

from rollcall.utils import qr

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


@pytest.mark.parametrize("prn", [
    "1",
    "00042",
    "PRN-2024/007",
    "AbCdEf123",
    "72.018_b",
    "A B C",
])
def test_round_trip(prn):
    assert qr.decode(qr.render(qr.encode(prn))) == prn


def test_encode_is_the_trimmed_prn():
    assert qr.encode("  0042 ") == "0042"
    assert qr.encode(None) == ""


def test_render_png():
    png = qr.render("123")
    assert png.startswith(PNG_MAGIC)
    assert qr.render("123") == png


def test_data_url():
    url = qr.render_data_url("123")
    assert url.startswith("data:image/png;base64,")


def test_decode_without_code():
    ok, buf = cv2.imencode(".png", np.full((200, 200, 3), 255, dtype=np.uint8))
    assert ok
    assert qr.decode(buf.tobytes()) is None


def test_decode_garbage():
    assert qr.decode(b"") is None
    assert qr.decode(b"not an image") is None
