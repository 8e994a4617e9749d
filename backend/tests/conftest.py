from __future__ import annotations

import os
from pathlib import Path

import pytest
from PIL import Image

from webp_converter import config as app_config
from webp_converter import db


class FakeRaster:
    """Raster stand-in whose encoded size is a function of (quality, width, height)."""

    def __init__(self, width: int, height: int, size_fn, root: "FakeRaster | None" = None):
        self.width = width
        self.height = height
        self.size_fn = size_fn
        self.root = root
        self.scale_calls: list[tuple[int, int]] = []

    def scale(self, width: int, height: int) -> "FakeRaster":
        self.scale_calls.append((width, height))
        if (width, height) == (self.width, self.height):
            return self
        return FakeRaster(width, height, self.size_fn, root=self)

    def encode_webp(self, quality: int) -> bytes:
        return b"x" * self.size_fn(quality, self.width, self.height)


@pytest.fixture
def fake_raster():
    return FakeRaster


@pytest.fixture
def make_image(tmp_path: Path):
    """Write a JPEG/PNG into tmp_path. noise=True gives incompressible content."""

    def _make(name: str = "photo.jpg", size: tuple[int, int] = (320, 240), noise: bool = False) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        w, h = size
        if noise:
            img = Image.frombytes("RGB", size, os.urandom(w * h * 3))
        else:
            img = Image.new("RGB", size, (200, 120, 40))
            for x in range(0, w, 8):
                for y in range(h):
                    img.putpixel((x, y), (x % 256, y % 256, 90))
        fmt = "PNG" if path.suffix.lower() == ".png" else "JPEG"
        img.save(path, format=fmt)
        return path

    return _make


@pytest.fixture
def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(app_config, "DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    db.dispose_engine()
    db.init_db()
    yield
    db.dispose_engine()


@pytest.fixture
def client(database, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    from fastapi.testclient import TestClient

    from webp_converter.main import app

    uploads = tmp_path / "uploads"
    uploads.mkdir(exist_ok=True)
    monkeypatch.setattr(app_config, "UPLOADS_DIR", uploads)
    monkeypatch.setattr(app_config, "UPLOADS_BASE_URL", "http://site/uploads")
    monkeypatch.setattr(app_config, "ADMIN_TOKEN", "")
    with TestClient(app) as c:
        yield c
