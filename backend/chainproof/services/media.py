from __future__ import annotations
import io
from PIL import Image, UnidentifiedImageError


ALLOWED_MIME = {"image/jpeg", "image/png"}
EXT_FOR_MIME = {"image/jpeg": "jpg", "image/png": "png"}

def sniff_mime(data: bytes) -> str | None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format == "JPEG":
                return "image/jpeg"
            elif img.format == "PNG":
                return "image/png"
            return None
    except (UnidentifiedImageError, OSError):
        return None

def validate_image(data: bytes) -> str:
    """
    Check that `data` is an intact JPEG or PNG and return its mime type.
    Raises ValueError otherwise.
    """
    mime = sniff_mime(data)
    if mime not in ALLOWED_MIME:
        raise ValueError("Unsupported image type; expected JPEG or PNG")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()  # basic integrity
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValueError("Invalid image file") from e
    return mime

def ext_for_mime(mime: str) -> str:
    return EXT_FOR_MIME.get(mime, "bin")

def mime_for_key(key: str) -> str:
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    for mime, known in EXT_FOR_MIME.items():
        if known == ext:
            return mime
    return "application/octet-stream"
