from __future__ import annotations

import os
import tempfile
from io import BytesIO

import cloudinary.uploader
from PIL import Image, ImageOps, UnidentifiedImageError

from dumbrent.utils.cloudinary_config import cloudinary_folder, cloudinary_is_configured, configure_cloudinary


MAX_IMAGE_SIZE = 1600   # px
JPEG_QUALITY = 82


def cloudinary_enabled() -> bool:
    return cloudinary_is_configured()


def looks_like_image(raw: bytes) -> bool:
    if not raw or len(raw) < 16:
        return False

    sig = raw[:16]

    return (
        sig.startswith(b"\xFF\xD8\xFF") or          # JPEG
        sig.startswith(b"\x89PNG\r\n\x1a\n") or     # PNG
        (sig.startswith(b"RIFF") and sig[8:12] == b"WEBP") or
        sig.startswith(b"GIF8")
    )


def optimize_image(raw: bytes) -> bytes | None:
    """
    Re-encode an upload as a progressive JPEG no larger than MAX_IMAGE_SIZE
    on its long edge, honouring EXIF orientation.

    Returns None when the bytes are not a decodable image.
    """
    if not looks_like_image(raw):
        return None
    try:
        img = Image.open(BytesIO(raw))
        img = ImageOps.exif_transpose(img)
        img = img.convert("RGB")
        img.thumbnail((MAX_IMAGE_SIZE, MAX_IMAGE_SIZE), Image.LANCZOS)
        out = BytesIO()
        img.save(out, format="JPEG", quality=JPEG_QUALITY, optimize=True, progressive=True)
        return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def upload_image(*, raw: bytes, public_id: str, kind: str = "listings") -> tuple[str, str]:
    """
    Upload already-optimized JPEG bytes. Returns (secure_url, public_id);
    both empty when Cloudinary answered without them.
    """
    configure_cloudinary()
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(delete=False, suffix=".jpg") as tmp:
            tmp.write(raw)
            tmp_path = tmp.name

        res = cloudinary.uploader.upload(
            tmp_path,
            resource_type="image",
            folder=cloudinary_folder(kind),
            public_id=public_id,
            overwrite=False,
            type="upload",
            invalidate=False,
        )

        url = str(res.get("secure_url") or "").strip()
        pid = str(res.get("public_id") or "").strip()
        if not url or not pid:
            return "", ""
        return url, pid
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)


def destroy(*, public_id: str) -> None:
    pid = (public_id or "").strip()
    if not pid:
        return
    configure_cloudinary()
    cloudinary.uploader.destroy(pid, resource_type="image", invalidate=False)
