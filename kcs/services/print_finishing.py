"""
Image and PDF operations used by the print stages.

Pillow does the pixel work (resizing, CMYK conversion, text overlays,
cover spread composition); reportlab writes the final PDFs. Everything here
is pure: bytes and images in, bytes and images out. The stages own storage
and persistence.
"""

import base64
import io
import logging
import math
import re
from pathlib import Path
from typing import Iterable

from PIL import Image, ImageCms, ImageDraw, ImageFont
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

REFERENCE_PAGE_PX = 2433
MIN_SPINE_PX = 100
PAPER_THICKNESS_MM = 0.1
DEFAULT_OVERLAY_POSITION = "b"

_SCORE_RE = re.compile(r"image\s*#?\s*(\d+)\s*[:=\-]\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_POSITION_WORDS = {
    "top left": "tl",
    "top-left": "tl",
    "top right": "tr",
    "top-right": "tr",
    "bottom left": "bl",
    "bottom-left": "bl",
    "bottom right": "br",
    "bottom-right": "br",
    "top": "t",
    "bottom": "b",
}
_POSITION_CODE_RE = re.compile(r"\b(tl|tr|bl|br|t|b)\b")


def decode_base64_image(data: str) -> bytes:
    if data.startswith("data:"):
        data = data.split(",", 1)[1]
    return base64.b64decode(data)


def open_image(content: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(content))
    image.load()
    return image


def to_png_bytes(image: Image.Image) -> bytes:
    if image.mode not in ("RGB", "RGBA", "L"):
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def upscale(image: Image.Image, size: int) -> Image.Image:
    """Resize to a `size` x `size` print square."""
    if image.size == (size, size):
        return image
    return image.resize((size, size), Image.LANCZOS)


def has_print_dimensions(image: Image.Image, size: int) -> bool:
    return image.size == (size, size)


def _load_icc(icc_path: str | None) -> bytes | None:
    if not icc_path:
        return None
    path = Path(icc_path)
    if not path.exists():
        logger.warning(f"ICC profile {icc_path} not found, converting without it")
        return None
    return path.read_bytes()


def convert_to_cmyk(image: Image.Image, icc_path: str | None = None) -> tuple[Image.Image, bytes | None]:
    """
    Convert to CMYK, through the ICC profile when one is available.

    Returns the converted image and the profile bytes to embed on save.
    """
    if image.mode == "CMYK":
        return image, _load_icc(icc_path)
    rgb = image.convert("RGB")
    icc = _load_icc(icc_path)
    if icc is None:
        return rgb.convert("CMYK"), None
    srgb = ImageCms.createProfile("sRGB")
    output = ImageCms.ImageCmsProfile(io.BytesIO(icc))
    converted = ImageCms.profileToProfile(
        rgb, srgb, output, outputMode="CMYK", renderingIntent=ImageCms.Intent.RELATIVE_COLORIMETRIC
    )
    return converted, icc


def to_cmyk_tiff(image: Image.Image, icc_path: str | None = None) -> bytes:
    """Lossless (LZW) CMYK TIFF with the ICC profile embedded when present."""
    cmyk, icc = convert_to_cmyk(image, icc_path)
    buffer = io.BytesIO()
    save_args = {"format": "TIFF", "compression": "tiff_lzw"}
    if icc:
        save_args["icc_profile"] = icc
    cmyk.save(buffer, **save_args)
    return buffer.getvalue()


def estimate_page_count(final_text: str | None, max_pages: int, has_dedication: bool) -> int:
    """Pages the assembled book will have: story pages, dedication, promo, padded to even."""
    story_pages = min(len(split_pages(final_text or "", max_pages)), max_pages) or max_pages
    pages = story_pages + (1 if has_dedication else 0) + 1
    return pages + (pages % 2)


def spine_width_px(page_count: int, page_px: int = REFERENCE_PAGE_PX, dpi: int = 300) -> int:
    """Spine width for `page_count` pages, scaled to the configured page size."""
    scale = page_px / REFERENCE_PAGE_PX
    thickness_px = math.floor(page_count * PAPER_THICKNESS_MM / 25.4 * dpi * scale)
    return max(int(MIN_SPINE_PX * scale), thickness_px, 1)


def split_pages(text: str, max_pages: int) -> list[str]:
    """One page per paragraph (blank-line separated), at most `max_pages`."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    return paragraphs[:max_pages]


def hex_to_cmyk(color: str) -> tuple:
    return Image.new("RGB", (1, 1), color).convert("CMYK").getpixel((0, 0))


def load_font(family: str, size: int) -> ImageFont.ImageFont:
    try:
        return ImageFont.truetype(f"{family}.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def scaled_font_size(configured: int, page_px: int) -> int:
    return max(8, round(configured * page_px / REFERENCE_PAGE_PX))


def wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> list[str]:
    lines: list[str] = []
    for paragraph in text.splitlines() or [""]:
        current = ""
        for word in paragraph.split():
            candidate = f"{current} {word}".strip()
            if current and draw.textlength(candidate, font=font) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
    return lines


def parse_overlay_position(response: str | None, allowed: list[str]) -> str:
    """Position code from a vision answer; the default on anything unusable."""
    if not response:
        return DEFAULT_OVERLAY_POSITION
    text = response.strip().lower()
    for words, code in _POSITION_WORDS.items():
        if words in text:
            return code if code in allowed else DEFAULT_OVERLAY_POSITION
    match = _POSITION_CODE_RE.search(text)
    if match and match.group(1) in allowed:
        return match.group(1)
    return DEFAULT_OVERLAY_POSITION


def parse_vision_scores(response: str | None, candidate_count: int) -> list[float | None]:
    """Scores per candidate from lines like "Image 2: 8.5". Missing ones are None."""
    scores: list[float | None] = [None] * candidate_count
    for number, score in _SCORE_RE.findall(response or ""):
        index = int(number) - 1
        if 0 <= index < candidate_count:
            scores[index] = float(score)
    return scores


def pick_best_candidate(scores: list[float | None]) -> int:
    """Index of the highest score; the first candidate when nothing parsed."""
    best_index, best_score = 0, None
    for index, score in enumerate(scores):
        if score is not None and (best_score is None or score > best_score):
            best_index, best_score = index, score
    return best_index


def overlay_text(page: Image.Image, text: str, position: str, print_settings) -> Image.Image:
    """Draw `text` on a white panel at `position` using the reading-age typography."""
    page = page.convert("CMYK").copy()
    width, height = page.size
    draw = ImageDraw.Draw(page)
    font = load_font(print_settings.font_family, scaled_font_size(print_settings.font_size, width))
    border = max(1, round(width * print_settings.border_percent / 100))
    text_width = round(width * print_settings.text_width_percent / 100) - 2 * border
    lines = wrap_text(draw, text, font, max(text_width, 10))
    line_height = round(font.size * print_settings.line_spacing / 100)
    panel_height = line_height * len(lines) + 2 * border
    panel_width = min(width - 2 * border, text_width + 2 * border)

    if position.startswith("t"):
        top = border
    else:
        top = height - panel_height - border
    if position.endswith("l") and len(position) == 2:
        left = border
    elif position.endswith("r") and len(position) == 2:
        left = width - panel_width - border
    else:
        left = (width - panel_width) // 2

    draw.rectangle(
        [left, top, left + panel_width, top + panel_height], fill=(0, 0, 0, 0)
    )
    fill = hex_to_cmyk(print_settings.text_color)
    y = top + border
    for line in lines:
        draw.text((left + border, y), line, font=font, fill=fill)
        y += line_height
    return page


def text_page(text: str, size: int, print_settings) -> Image.Image:
    """A white page with centred text (dedication and promo pages)."""
    page = Image.new("CMYK", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(page)
    font = load_font(print_settings.font_family, scaled_font_size(print_settings.font_size, size))
    lines = wrap_text(draw, text, font, round(size * print_settings.text_width_percent / 100))
    line_height = round(font.size * print_settings.line_spacing / 100)
    y = (size - line_height * len(lines)) // 2
    fill = hex_to_cmyk(print_settings.text_color)
    for line in lines:
        line_width = draw.textlength(line, font=font)
        draw.text(((size - line_width) // 2, y), line, font=font, fill=fill)
        y += line_height
    return page


def blank_page(size: int) -> Image.Image:
    return Image.new("CMYK", (size, size), (0, 0, 0, 0))


def compose_cover_spread(
    front: Image.Image,
    back: Image.Image,
    spine_px: int,
    spine_text: str,
    order_badge: str,
) -> Image.Image:
    """Back cover, spine and front cover side by side on one CMYK sheet."""
    front = front.convert("CMYK")
    back = back.convert("CMYK").resize(front.size)
    page_w, page_h = front.size
    spread = Image.new("CMYK", (page_w * 2 + spine_px, page_h), (0, 0, 0, 0))
    spread.paste(back, (0, 0))
    spread.paste(front, (page_w + spine_px, 0))

    # Spine text is drawn horizontally then rotated to run top to bottom
    font_size = max(8, int(spine_px * 0.5))
    font = ImageFont.load_default(size=font_size)
    strip = Image.new("CMYK", (page_h, spine_px), (0, 0, 0, 0))
    strip_draw = ImageDraw.Draw(strip)
    text_w = strip_draw.textlength(spine_text, font=font)
    strip_draw.text(
        ((page_h - text_w) / 2, (spine_px - font_size) / 2), spine_text, font=font,
        fill=(0, 0, 0, 255),
    )
    spread.paste(strip.rotate(-90, expand=True), (page_w, 0))

    # Order badge in the bottom corner of the back cover
    draw = ImageDraw.Draw(spread)
    badge_font = ImageFont.load_default(size=max(8, page_w // 40))
    margin = max(2, page_w // 50)
    badge_w = draw.textlength(order_badge, font=badge_font)
    badge_h = badge_font.size + margin
    box = [margin, page_h - margin - badge_h, margin * 2 + badge_w, page_h - margin]
    draw.rectangle(box, fill=(0, 0, 0, 0), outline=(0, 0, 0, 255))
    draw.text((box[0] + margin / 2, box[1] + margin / 4), order_badge, font=badge_font, fill=(0, 0, 0, 255))
    return spread


def export_pdf(pages: Iterable[Image.Image], dpi: int, title: str = "") -> bytes:
    """
    One PDF page per image, each sized from the image at `dpi`.

    `pages` may be a generator; each image is drawn and released before the
    next one is produced.
    """
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer)
    if title:
        pdf.setTitle(title)
    for page in pages:
        width_pt = page.width * 72 / dpi
        height_pt = page.height * 72 / dpi
        pdf.setPageSize((width_pt, height_pt))
        pdf.drawImage(ImageReader(page), 0, 0, width=width_pt, height=height_pt)
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()
