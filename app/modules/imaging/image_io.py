import io
from PIL import Image, UnidentifiedImageError

# Pillow format name -> (extension, MIME type)
FORMATS = {
    "JPEG": ("jpg", "image/jpeg"),
    "PNG": ("png", "image/png"),
    "WEBP": ("webp", "image/webp"),
    "GIF": ("gif", "image/gif"),
}

ACCEPTED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


class UnreadableImage(ValueError):
    """Bytes are corrupt, empty, or not an image Pillow can decode."""


def open_image(data: bytes) -> Image.Image:
    """Open and fully decode ``data``; raises ``UnreadableImage`` on failure."""
    if not data:
        raise UnreadableImage("empty image bytes")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise UnreadableImage(f"cannot decode image: {e}") from e
    if not img.width or not img.height:
        raise UnreadableImage("unable to read image dimensions")
    return img


def image_size(data: bytes) -> tuple[int, int]:
    return open_image(data).size


def is_animated(img: Image.Image) -> bool:
    return bool(getattr(img, "is_animated", False)) and getattr(img, "n_frames", 1) > 1


def has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def extension_for_content_type(content_type: str) -> str:
    for ext, mime in FORMATS.values():
        if mime == content_type:
            return ext
    raise ValueError(f"unsupported content type: {content_type}")


def encode(img: Image.Image, fmt: str, **params) -> bytes:
    out = io.BytesIO()
    img.save(out, format=fmt, **params)
    return out.getvalue()


def sniff(data: bytes) -> tuple[str | None, bool]:
    """(Pillow format, animated) without decoding pixels; (None, False) if unknown."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.format, is_animated(img)
    except (UnidentifiedImageError, OSError):
        return None, False
