"""Shared test fixtures for slot suggestion tests."""

import numpy as np
import cv2
import pytest

from look_suggest.catalog import ItemMeta
from look_suggest.config import SuggestionConfig
from look_suggest.features import PixelFeatureExtractor


@pytest.fixture
def config(tmp_path):
    """Default configuration with the index file inside tmp_path."""
    return SuggestionConfig(index_path=str(tmp_path / "item-index.json"))


@pytest.fixture
def extractor():
    return PixelFeatureExtractor()


@pytest.fixture
def textured_patch():
    """Generate a 64x64 opaque RGBA checkerboard in two colors."""
    img = np.zeros((64, 64, 4), dtype=np.uint8)
    img[:, :] = [200, 40, 40, 255]
    for y in range(0, 64, 8):
        for x in range(0, 64, 8):
            if (x // 8 + y // 8) % 2 == 0:
                img[y:y+8, x:x+8, :3] = [30, 60, 180]
    return img


@pytest.fixture
def flat_patch():
    """Generate a 64x64 opaque single-color RGBA patch (no edges)."""
    img = np.zeros((64, 64, 4), dtype=np.uint8)
    img[:, :] = [120, 160, 90, 255]
    return img


@pytest.fixture
def transparent_patch():
    """Generate a 64x64 fully transparent RGBA patch."""
    return np.zeros((64, 64, 4), dtype=np.uint8)


@pytest.fixture
def character_image():
    """Generate a 256x256 RGB figure: body, head and shield on white."""
    img = np.ones((256, 256, 3), dtype=np.uint8) * 255
    cv2.rectangle(img, (80, 60), (176, 200), (150, 40, 40), -1)
    cv2.circle(img, (128, 40), 28, (230, 190, 120), -1)
    cv2.rectangle(img, (160, 110), (200, 170), (40, 70, 160), -1)
    for x in range(84, 176, 12):
        cv2.line(img, (x, 64), (x, 196), (60, 20, 20), 2)
    return img


@pytest.fixture
def character_png(character_image):
    """The character image encoded as PNG bytes."""
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(character_image, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


@pytest.fixture
def transparent_png():
    """A fully transparent 64x64 PNG."""
    ok, buffer = cv2.imencode(".png", np.zeros((64, 64, 4), dtype=np.uint8))
    assert ok
    return buffer.tobytes()


@pytest.fixture
def unit_vectors():
    """Factory for one-hot embeddings of the default dimension."""
    def make(position, dim=96):
        v = [0.0] * dim
        v[position] = 1.0
        return v
    return make


@pytest.fixture
def palette_catalog():
    """Three coiffe items: a red palette, a blue palette and none."""
    return {
        "coiffe": [
            ItemMeta(1, "Red Hat", "coiffe", 10, palette=["#C0392B"] * 3),
            ItemMeta(2, "Blue Hat", "coiffe", 20, palette=["#2E86C1"] * 3),
            ItemMeta(3, "Plain Hat", "coiffe"),
        ],
    }


@pytest.fixture
def wide_figure_png():
    """A 256x128 opaque PNG: light backdrop, 40x40 red block in the centre."""
    img = np.zeros((128, 256, 3), dtype=np.uint8)
    img[:, :] = (244, 241, 234)
    img[44:84, 108:148] = (192, 57, 43)
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()
