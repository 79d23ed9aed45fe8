import logging
from PIL.PngImagePlugin import PngInfo

from app.modules.imaging.image_io import open_image, encode, is_animated

log = logging.getLogger("media.metadata")

EXIF_ARTIST = 0x013B
EXIF_COPYRIGHT = 0x8298


def embed_attribution(data: bytes, attribution: str) -> bytes:
    """Stamp author/copyright fields with ``attribution``.

    JPEG and WebP carry it in EXIF (Artist, Copyright), PNG in tEXt chunks
    (Author, Copyright). Everything else already embedded is written back
    as-is. Formats with no metadata slot we can fill (GIF, animations) are
    returned unchanged.
    """
    img = open_image(data)
    fmt = img.format
    if fmt not in ("JPEG", "WEBP", "PNG") or is_animated(img):
        log.debug("No attribution slot for %s (animated=%s); leaving bytes untouched", fmt, is_animated(img))
        return data

    exif = img.getexif()
    params = {}
    icc = img.info.get("icc_profile")
    if icc:
        params["icc_profile"] = icc

    if fmt == "PNG":
        info = PngInfo()
        for key, value in getattr(img, "text", {}).items():
            if key not in ("Author", "Copyright"):
                info.add_text(key, value)
        info.add_text("Author", attribution)
        info.add_text("Copyright", attribution)
        params["pnginfo"] = info
        if len(exif):
            params["exif"] = exif.tobytes()
        return encode(img, "PNG", **params)

    exif[EXIF_ARTIST] = attribution
    exif[EXIF_COPYRIGHT] = attribution
    params["exif"] = exif.tobytes()
    if fmt == "JPEG":
        # reuse the source quantisation tables instead of recompressing
        params["quality"] = "keep"
    else:
        params["quality"] = 95
    return encode(img, fmt, **params)
