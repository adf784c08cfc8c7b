from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

from stockbook import config as app_config
from stockbook.errors import ValidationError
from stockbook.services import photos


class _DummyBot:
    def __init__(self, source_path: Path):
        self._source_path = Path(source_path)
        self.calls = []

    async def get_file(self, file_id: str):
        self.calls.append(("get_file", file_id))
        return SimpleNamespace(file_path="telegram/source/path")

    async def download_file(self, file_path: str, destination: Path):
        self.calls.append(("download_file", file_path, Path(destination)))
        dest_path = Path(destination)
        dest_path.write_bytes(self._source_path.read_bytes())


class _FailingBot(_DummyBot):
    async def download_file(self, file_path: str, destination: Path):
        raise RuntimeError("download failure")


def _make_sample_image(path: Path, size=(10, 10)) -> None:
    image = Image.new("RGB", size, color=(255, 0, 0))
    image.save(path, format="PNG")


def test_photo_filename_is_filesystem_safe():
    assert photos.photo_filename("AB/12 x") == "AB_12_x.jpg"
    assert photos.photo_filename("..") == "product.jpg"


def test_download_and_compress_photo_success(monkeypatch, tmp_path):
    photo_dir = tmp_path / "photos"
    monkeypatch.setattr(app_config, "PHOTOS_DIR", photo_dir)

    source = tmp_path / "source.png"
    _make_sample_image(source)

    bot = _DummyBot(source)
    result = asyncio.run(photos.download_and_compress_photo(bot, "file42", "TB-17"))

    assert result is not None
    dest_path = Path(result)
    assert dest_path.exists()
    assert dest_path.parent == photo_dir
    assert dest_path.name == "TB-17.jpg"
    assert bot.calls[0] == ("get_file", "file42")

    # Temporary files should be cleaned up
    assert not list(photo_dir.glob("tmp_*"))

    with Image.open(dest_path) as img:
        assert img.format == "JPEG"


def test_download_and_compress_photo_failure(monkeypatch, tmp_path, caplog):
    photo_dir = tmp_path / "photos"
    monkeypatch.setattr(app_config, "PHOTOS_DIR", photo_dir)

    source = tmp_path / "source.png"
    _make_sample_image(source)

    bot = _FailingBot(source)
    with caplog.at_level("ERROR"):
        result = asyncio.run(photos.download_and_compress_photo(bot, "file42", "TB-23"))

    assert result is None
    assert "Failed to download or compress photo" in caplog.text

    # No destination file or temp leftovers should remain
    assert not (photo_dir / "TB-23.jpg").exists()
    assert not list(photo_dir.glob("tmp_*"))


def test_store_product_photo_downscales(monkeypatch, tmp_path):
    monkeypatch.setattr(app_config, "PHOTOS_DIR", tmp_path / "photos")
    monkeypatch.setattr(app_config, "PHOTO_MAX_SIDE", 100)
    source = tmp_path / "big.png"
    _make_sample_image(source, size=(400, 200))

    stored = Path(photos.store_product_photo(source, "BIG-1"))

    assert stored.name == "BIG-1.jpg"
    assert photos.photo_exists(str(stored))
    with Image.open(stored) as img:
        assert img.size == (100, 50)


def test_store_product_photo_rejects_non_images(monkeypatch, tmp_path):
    monkeypatch.setattr(app_config, "PHOTOS_DIR", tmp_path / "photos")
    bogus = tmp_path / "notes.png"
    bogus.write_text("not an image", encoding="utf-8")

    with pytest.raises(ValidationError, match="Uploaded file is not a supported image"):
        photos.store_product_photo(bogus, "NOPE-1")
    assert not (tmp_path / "photos" / "NOPE-1.jpg").exists()
    assert not photos.photo_exists(None)
