import io
import sys
from pathlib import Path

import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent))

from gangsheet.core import ArtworkItem, GangSheetConfig, new_id
from gangsheet.canvas import BlobStore, SheetOrchestrator


@pytest.fixture
def config():
    # Real sheet geometry, tiny export ceilings so rasters stay small
    return GangSheetConfig(max_safe_dimension=1200, max_safe_area=1_000_000)


@pytest.fixture
def store(tmp_path):
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def make_png(tmp_path):
    def _make(name="art.png", size=(40, 30), color=(255, 0, 0, 255), border=0):
        img = Image.new("RGBA", (size[0] + 2 * border, size[1] + 2 * border), (0, 0, 0, 0))
        img.paste(Image.new("RGBA", size, color), (border, border))
        path = tmp_path / name
        img.save(path, format="PNG")
        return path
    return _make


def png_bytes(size=(80, 60), color=(0, 0, 255, 255)) -> bytes:
    with io.BytesIO() as buffer:
        Image.new("RGBA", size, color).save(buffer, format="PNG")
        return buffer.getvalue()


@pytest.fixture
def make_artwork(make_png):
    def _make(width_cm=10.0, height_cm=7.5, quantity=1, with_original=True):
        art_id = new_id("art_")
        path = make_png(f"{art_id}.png")
        return ArtworkItem(
            id=art_id,
            width_cm=width_cm,
            height_cm=height_cm,
            quantity=quantity,
            preview_path=str(path),
            original=png_bytes() if with_original else None,
            original_width=80,
            original_height=60,
            preview_width=40,
            preview_height=30,
            file_name=path.name,
        )
    return _make


@pytest.fixture
def orchestrator(config, store):
    return SheetOrchestrator(config, store=store)


@pytest.fixture
def make_png_bytes():
    return png_bytes
