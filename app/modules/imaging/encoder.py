import logging
from dataclasses import dataclass

from PIL import Image, ImageOps

from app.modules.imaging.image_io import FORMATS, UnreadableImage, open_image, encode, has_alpha, is_animated

log = logging.getLogger("media.encoder")

CANONICAL_FORMAT = "WEBP"

@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    extension: str
    content_type: str

    @property
    def format(self) -> str:
        return self.extension


def encode_canonical(data: bytes, *, max_long_edge: int = 2048, quality: int = 85) -> EncodedImage:
    """Re-encode ``data`` to the canonical storage format (WebP).

    EXIF orientation is baked into the pixels and the long edge is capped at
    ``max_long_edge`` (never enlarged). GIFs and other animations are passed
    through untouched.
    """
    img = open_image(data)
    fmt = img.format
    if fmt == "GIF" or is_animated(img):
        if fmt not in FORMATS:
            raise UnreadableImage(f"unsupported animated format: {fmt}")
        ext, mime = FORMATS[fmt]
        log.debug("Passing through animated/%s input (%d bytes)", fmt, len(data))
        return EncodedImage(data=data, extension=ext, content_type=mime)

    icc = img.info.get("icc_profile")
    img = ImageOps.exif_transpose(img)
    exif = img.getexif()
    exif.pop(0x0112, None)

    img.thumbnail((max_long_edge, max_long_edge), Image.Resampling.LANCZOS)
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if has_alpha(img) else "RGB")

    params = {"quality": quality}
    if len(exif):
        params["exif"] = exif.tobytes()
    if icc:
        params["icc_profile"] = icc
    out = encode(img, CANONICAL_FORMAT, **params)
    ext, mime = FORMATS[CANONICAL_FORMAT]
    log.debug("Encoded %s %dx%d -> %s (%d -> %d bytes)", fmt, img.width, img.height, ext, len(data), len(out))
    return EncodedImage(data=out, extension=ext, content_type=mime)
