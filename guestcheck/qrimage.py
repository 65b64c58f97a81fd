from __future__ import annotations

import io
from pathlib import Path

import qrcode
from PIL import Image, ImageDraw, ImageFont

# Card: QR code on top, guest name and table underneath
CARD_W = 600
QR_SIZE = 480
CAPTION_H = 180


# Guest name is set bold, the table line regular
_FONT_DIR = Path("/usr/share/fonts/truetype/dejavu")
NAME_FONT = _FONT_DIR / "DejaVuSans-Bold.ttf"
TABLE_FONT = _FONT_DIR / "DejaVuSans.ttf"


def _load_font(path: Path, size: int) -> ImageFont.ImageFont:
    try:
        return ImageFont.truetype(str(path), size)
    except OSError:
        return ImageFont.load_default()


def _caption(draw: ImageDraw.ImageDraw, y: int, text: str,
             font: ImageFont.ImageFont, fill: str = "black") -> int:
    """Write one caption line centered on the card; returns its height."""
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    draw.text(((CARD_W - (right - left)) // 2, y), text, fill=fill, font=font)
    return bottom - top


def render_qr(payload: str, size: int = QR_SIZE) -> Image.Image:
    """Plain QR code of a credential payload."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()
    return img.convert("RGB").resize((size, size), Image.NEAREST)


def render_credential_card(payload: str, name: str = "",
                           table_number: int | None = None) -> Image.Image:
    """QR card handed to a guest: code, name, table."""
    height = QR_SIZE + 60 + (CAPTION_H if name or table_number is not None else 0)
    img = Image.new("RGB", (CARD_W, height), "white")
    img.paste(render_qr(payload), ((CARD_W - QR_SIZE) // 2, 30))

    draw = ImageDraw.Draw(img)
    y = QR_SIZE + 60

    if name:
        y += _caption(draw, y, name, _load_font(NAME_FONT, 44)) + 20
        draw.line([(40, y), (CARD_W - 40, y)], fill="#cccccc", width=2)
        y += 20

    if table_number is not None:
        _caption(draw, y, f"Table {table_number}", _load_font(TABLE_FONT, 40), fill="#444444")

    return img


def card_png_bytes(payload: str, name: str = "", table_number: int | None = None) -> bytes:
    buffer = io.BytesIO()
    render_credential_card(payload, name, table_number).save(buffer, format="PNG")
    return buffer.getvalue()
