from __future__ import annotations

import logging
import re
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Optional

from PIL import Image, UnidentifiedImageError

from stockbook import config as app_config
from stockbook.errors import ValidationError

logger = logging.getLogger(__name__)

_SAFE_NAME_RX = re.compile(r"[^A-Za-z0-9_.\-]+")


def photo_filename(model_no: str) -> str:
    cleaned = _SAFE_NAME_RX.sub("_", (model_no or "").strip()).strip("._")
    return f"{cleaned or 'product'}.jpg"


def compress_image_to_jpeg(src_path: Path, dest_path: Path, quality: int, max_side: Optional[int] = None) -> None:
    with Image.open(src_path) as im:
        im = im.convert("RGB")
        max_side = max_side or app_config.PHOTO_MAX_SIDE
        if max(im.size) > max_side:
            im.thumbnail((max_side, max_side))
        im.save(dest_path, format="JPEG", quality=quality, optimize=True)


def store_product_photo(src_path: Path, model_no: str) -> str:
    """Compress an uploaded image into ``PHOTOS_DIR/<model_no>.jpg``.

    Raises ValidationError when the upload is not a readable image.
    """
    app_config.PHOTOS_DIR.mkdir(parents=True, exist_ok=True)
    dest = app_config.PHOTOS_DIR / photo_filename(model_no)
    try:
        compress_image_to_jpeg(Path(src_path), dest, app_config.PHOTO_QUALITY)
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Rejected photo upload for %s: %s", model_no, e)
        if dest.exists():
            dest.unlink()
        raise ValidationError("Uploaded file is not a supported image")
    return str(dest)


async def download_and_compress_photo(bot, file_id: str, model_no: str) -> Optional[str]:
    """Download a Telegram photo by file_id and store it as the product photo.

    Returns the stored path or None on error.
    """
    try:
        file = await bot.get_file(file_id)
    except Exception:
        logger.exception(
            "Failed to fetch Telegram file metadata for product %s (file_id=%s)",
            model_no,
            file_id,
        )
        return None

    app_config.PHOTOS_DIR.mkdir(parents=True, exist_ok=True)
    dest = app_config.PHOTOS_DIR / photo_filename(model_no)

    try:
        with TemporaryDirectory(prefix="tmp_", dir=app_config.PHOTOS_DIR) as tmp_dir:
            tmp_path = Path(tmp_dir) / "source"
            await bot.download_file(file.file_path, destination=tmp_path)
            from asyncio import to_thread

            await to_thread(compress_image_to_jpeg, tmp_path, dest, app_config.PHOTO_QUALITY)
    except Exception:
        logger.exception(
            "Failed to download or compress photo for product %s (file_id=%s)",
            model_no,
            file_id,
        )
        if dest.exists():
            try:
                dest.unlink()
            except OSError:
                logger.warning("Failed to remove incomplete photo %s", dest, exc_info=True)
        return None

    return str(dest)


def photo_exists(path: Optional[str]) -> bool:
    return bool(path) and Path(path).is_file()
