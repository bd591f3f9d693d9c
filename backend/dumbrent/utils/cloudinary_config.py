import os
from functools import lru_cache

import cloudinary


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def cloudinary_is_configured() -> bool:
    """
    True when all three CLOUDINARY_* credentials are present.
    Listing and highlight images are kept under UPLOADS_DIR otherwise.
    """
    return bool(_env("CLOUDINARY_CLOUD_NAME") and _env("CLOUDINARY_API_KEY") and _env("CLOUDINARY_API_SECRET"))


@lru_cache(maxsize=1)
def configure_cloudinary() -> None:
    # Applied once, on the first upload or destroy.
    cloudinary.config(
        cloud_name=_env("CLOUDINARY_CLOUD_NAME"),
        api_key=_env("CLOUDINARY_API_KEY"),
        api_secret=_env("CLOUDINARY_API_SECRET"),
        secure=True,
    )


def cloudinary_folder(kind: str = "listings") -> str:
    base = _env("CLOUDINARY_FOLDER") or "dumbrent"
    return f"{base}/{kind}"
