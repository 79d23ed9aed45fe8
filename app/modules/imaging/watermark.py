"""Watermark compositor.

Burns a semi-transparent brand mark into one corner of an image. The mark is
sized from the image's *shorter* side so it stays proportionally constant for
portrait, landscape and square inputs, and keeps its native aspect ratio.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont, ImageOps

from app.modules.imaging.image_io import open_image, encode, has_alpha

log = logging.getLogger("media.watermark")

DEFAULT_MARK_PATH = Path(__file__).resolve().parents[2] / "assets" / "brand-mark.png"
FALLBACK_TEXT = "CreateSpot"


class WatermarkPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"


def is_valid_watermark_position(value: str | None) -> bool:
    return value in {p.value for p in WatermarkPosition}


def coerce_position(value: str | None) -> WatermarkPosition:
    """Stored settings are free text; anything unknown means bottom-right."""
    if is_valid_watermark_position(value):
        return WatermarkPosition(value)
    return WatermarkPosition.BOTTOM_RIGHT


@dataclass(frozen=True)
class WatermarkOptions:
    position: WatermarkPosition = WatermarkPosition.BOTTOM_RIGHT
    opacity: float = 0.5
    size_ratio: float = 0.12
    margin_ratio: float = 0.2

    def __post_init__(self):
        if not 0 < self.opacity <= 1:
            raise ValueError("opacity must be in (0, 1]")
        if not 0 < self.size_ratio <= 1:
            raise ValueError("size_ratio must be in (0, 1]")
        if self.margin_ratio < 0:
            raise ValueError("margin_ratio must be >= 0")


def mark_size_for(width: int, height: int, size_ratio: float) -> int:
    return max(1, round(min(width, height) * size_ratio))


def margin_for(mark_size: int, margin_ratio: float) -> int:
    return round(mark_size * margin_ratio)


def placement_for(
    image_size: tuple[int, int],
    mark_dims: tuple[int, int],
    position: WatermarkPosition,
    margin: int,
) -> tuple[int, int]:
    """Top-left coordinate of the mark, never negative."""
    width, height = image_size
    mark_w, mark_h = mark_dims
    if position == WatermarkPosition.TOP_LEFT:
        left, top = margin, margin
    elif position == WatermarkPosition.TOP_RIGHT:
        left, top = width - mark_w - margin, margin
    elif position == WatermarkPosition.BOTTOM_LEFT:
        left, top = margin, height - mark_h - margin
    else:
        left, top = width - mark_w - margin, height - mark_h - margin
    return max(0, left), max(0, top)


def _fade(mark: Image.Image, opacity: float) -> Image.Image:
    alpha = mark.getchannel("A").point(lambda px: int(px * opacity))
    mark.putalpha(alpha)
    return mark


def _load_brand_mark(mark_size: int, opacity: float, path: Path) -> Image.Image:
    with Image.open(path) as src:
        mark = src.convert("RGBA")
    # fit inside a mark_size square, keeping the logo's own proportions
    scale = mark_size / max(mark.width, mark.height)
    dims = (max(1, round(mark.width * scale)), max(1, round(mark.height * scale)))
    mark = mark.resize(dims, Image.Resampling.LANCZOS)
    return _fade(mark, opacity)


def _text_mark(mark_size: int, opacity: float) -> Image.Image:
    canvas = Image.new("RGBA", (mark_size, mark_size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    font_size = max(6, round(mark_size * 0.15))
    try:
        font = ImageFont.load_default(size=font_size)
    except TypeError:
        # Pillow < 10.1 only ships the fixed bitmap font
        font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), FALLBACK_TEXT, font=font)
    x = (mark_size - (right - left)) / 2 - left
    y = (mark_size - (bottom - top)) / 2 - top
    draw.text((x, y), FALLBACK_TEXT, font=font, fill=(255, 255, 255, round(255 * opacity)))
    return canvas


def render_mark(mark_size: int, opacity: float, mark_path: str | Path | None = None) -> Image.Image:
    path = Path(mark_path) if mark_path else DEFAULT_MARK_PATH
    try:
        return _load_brand_mark(mark_size, opacity, path)
    except (OSError, ValueError) as e:
        log.warning("Brand mark %s unavailable (%s); using text mark", path, e)
        return _text_mark(mark_size, opacity)


def apply_watermark(
    data: bytes,
    options: WatermarkOptions,
    mark_path: str | Path | None = None,
) -> bytes:
    img = open_image(data)
    fmt = img.format or "PNG"
    exif = img.getexif()
    icc = img.info.get("icc_profile")

    # bake orientation so "bottom-right" is the corner the viewer sees
    img = ImageOps.exif_transpose(img)

    mark_size = mark_size_for(img.width, img.height, options.size_ratio)
    mark = render_mark(mark_size, options.opacity, mark_path)
    margin = margin_for(mark_size, options.margin_ratio)
    left, top = placement_for(img.size, mark.size, options.position, margin)

    base = img.convert("RGBA")
    base.alpha_composite(mark, dest=(left, top))
    log.debug(
        "Watermark %s size=%d margin=%d at=(%d,%d) on %dx%d",
        options.position.value, mark_size, margin, left, top, img.width, img.height,
    )

    params = {}
    if icc:
        params["icc_profile"] = icc
    if fmt in ("JPEG", "WEBP"):
        exif.pop(0x0112, None)  # orientation already applied
        params["exif"] = exif.tobytes()
    if fmt == "JPEG":
        out = base.convert("RGB")
    elif has_alpha(img):
        out = base
    else:
        out = base.convert("RGB")
    if fmt in ("JPEG", "WEBP"):
        params["quality"] = 95
    return encode(out, fmt, **params)
