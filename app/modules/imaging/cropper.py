from dataclasses import dataclass

from PIL import Image, ImageOps

from app.modules.imaging.image_io import open_image, encode


@dataclass(frozen=True)
class FocalPoint:
    """Point of interest in percent (0-100) of width and height."""
    x: float
    y: float


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def crop_box_for(
    source: tuple[int, int],
    target: tuple[int, int],
    focal_point: FocalPoint | None = None,
) -> tuple[int, int, int, int]:
    """Largest box with the target's aspect ratio that fits in ``source``.

    Centred on the focal point when given, otherwise on the image centre, and
    shifted back inside the image when the centre is too close to an edge.
    """
    src_w, src_h = source
    target_w, target_h = target
    target_ratio = target_w / target_h
    if src_w / src_h > target_ratio:
        crop_h = src_h
        crop_w = min(src_w, src_h * target_ratio)
    else:
        crop_w = src_w
        crop_h = min(src_h, src_w / target_ratio)

    if focal_point is not None:
        cx = _clamp(focal_point.x, 0, 100) / 100 * src_w
        cy = _clamp(focal_point.y, 0, 100) / 100 * src_h
    else:
        cx, cy = src_w / 2, src_h / 2

    left = _clamp(cx - crop_w / 2, 0, src_w - crop_w)
    top = _clamp(cy - crop_h / 2, 0, src_h - crop_h)
    box_w = max(1, round(crop_w))
    box_h = max(1, round(crop_h))
    left = min(round(left), src_w - box_w)
    top = min(round(top), src_h - box_h)
    return left, top, left + box_w, top + box_h


def crop_to_focal_point(
    data: bytes,
    width: int,
    height: int,
    focal_point: FocalPoint | None = None,
) -> bytes:
    if width <= 0 or height <= 0:
        raise ValueError("target dimensions must be positive")
    img = ImageOps.exif_transpose(open_image(data))
    box = crop_box_for(img.size, (width, height), focal_point)
    cropped = img.crop(box).resize((width, height), Image.Resampling.LANCZOS)
    if cropped.mode not in ("RGB", "RGBA"):
        cropped = cropped.convert("RGBA")
    return encode(cropped, "PNG")
