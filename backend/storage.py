"""
Expert Evaluator - Media Storage
Local-disk object store for profile photos, served read-only under /media.

Layout:  <MEDIA_DIR>/profile-photos/<user_id>/profile.jpg
"""

import logging
import os
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

_BASE_DIR       = Path(__file__).resolve().parent.parent
MEDIA_DIR       = Path(os.getenv("MEDIA_DIR", str(_BASE_DIR / "media"))).resolve()
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

PROFILE_PHOTO_BUCKET = "profile-photos"


def ensure_media_dir() -> Path:
    MEDIA_DIR.mkdir(parents=True, exist_ok=True)
    return MEDIA_DIR


def profile_photo_key(user_id: str) -> str:
    # Always derived from the authenticated id, so a user can only write their own folder.
    return f"{PROFILE_PHOTO_BUCKET}/{user_id}/profile.jpg"


def public_url(key: str) -> str:
    return f"{PUBLIC_BASE_URL}/media/{key}"


async def save_profile_photo(user_id: str, data: bytes) -> str:
    """Write (or overwrite) the user's photo and return its public URL."""
    key = profile_photo_key(user_id)
    path = ensure_media_dir() / key
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "wb") as f:
        await f.write(data)
    logger.info("Stored profile photo for %s (%d bytes)", user_id, len(data))
    return public_url(key)
