import numpy as np
import pytest
from PIL import Image

from epaper_converter.image_helper import DISPLAY_HEIGHT, DISPLAY_WIDTH


@pytest.fixture
def make_image(tmp_path):
    """Write a solid-color image into a sources folder and return its path."""
    sources = tmp_path / 'sources'
    sources.mkdir(exist_ok=True)

    def _make(name, color=(255, 255, 255), size=(DISPLAY_WIDTH, DISPLAY_HEIGHT)):
        path = sources / name
        Image.new('RGB', size, color).save(path)
        return path

    return _make


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / 'output'
    path.mkdir()
    return path


@pytest.fixture
def gradient_pixels():
    """A small buffer with every channel changing, so error diffusion does real work."""
    height, width = 24, 32
    y, x = np.mgrid[0:height, 0:width]
    pixels = np.stack([
        (x * 255) // (width - 1),
        (y * 255) // (height - 1),
        ((x + y) * 127) // (width + height - 2) + 64,
    ], axis=-1)
    return pixels.astype(np.uint8)
