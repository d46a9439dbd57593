import numpy as np
import pytest
from PIL import Image

from epaper_converter.errors import DecodeError, FormatError, ValidationError
from epaper_converter.image_helper import (
    DISPLAY_HEIGHT,
    DISPLAY_WIDTH,
    PAYLOAD_SIZE,
    PALETTE_ARRAY,
    Color,
    apply_floyd_steinberg_dithering,
    closest_palette_index,
    default_color_palette,
    load_image_pixels,
    pack_indices,
    render_preview,
    unpack_indices,
    validate_dimensions,
)


def test_palette_has_seven_distinct_colors():
    assert len(default_color_palette) == 7
    assert len(set(default_color_palette)) == 7
    assert default_color_palette[0] == Color(0, 0, 0)
    assert default_color_palette[1] == Color(255, 255, 255)


@pytest.mark.parametrize('index', range(7))
def test_palette_color_maps_to_itself(index):
    assert closest_palette_index(default_color_palette[index]) == index


def test_closest_palette_index_prefers_first_on_tie():
    palette = [Color(0, 0, 0), Color(2, 0, 0)]
    assert closest_palette_index((1, 0, 0), palette) == 0


def test_closest_palette_index_handles_uint8_input():
    assert closest_palette_index(np.array([250, 250, 250], dtype=np.uint8)) == 1
    assert closest_palette_index(np.array([5, 3, 0], dtype=np.uint8)) == 0


@pytest.mark.parametrize('index', range(7))
def test_uniform_palette_image_dithers_to_single_index(index):
    pixels = np.empty((6, 8, 3), dtype=np.uint8)
    pixels[:, :] = default_color_palette[index]

    indices = apply_floyd_steinberg_dithering(pixels)

    assert indices.shape == (6, 8)
    assert indices.dtype == np.uint8
    assert (indices == index).all()


def test_dithering_is_deterministic(gradient_pixels):
    first = apply_floyd_steinberg_dithering(gradient_pixels)
    second = apply_floyd_steinberg_dithering(gradient_pixels.copy())

    assert first.tobytes() == second.tobytes()
    assert first.shape == gradient_pixels.shape[:2]
    assert first.max() <= 6


def test_dithering_mixes_colors_for_intermediate_tones(gradient_pixels):
    indices = apply_floyd_steinberg_dithering(gradient_pixels)
    assert len(np.unique(indices)) > 2


def test_error_diffuses_to_the_east():
    # (100, 100, 100) alone is closest to green, the carried error tips the
    # next pixel over to blue
    pixels = np.full((1, 2, 3), 100, dtype=np.uint8)

    indices = apply_floyd_steinberg_dithering(pixels)

    assert indices.tolist() == [[2, 3]]


def test_single_pixel_takes_nearest_color():
    # Mid gray sits closer to the panel's green than to black or white
    pixels = np.full((1, 1, 3), 128, dtype=np.uint8)
    assert apply_floyd_steinberg_dithering(pixels).tolist() == [[2]]


def test_pack_puts_first_pixel_in_high_nibble():
    indices = np.array([[1, 2, 3, 4], [6, 0, 5, 5]], dtype=np.uint8)
    assert pack_indices(indices) == bytes([0x12, 0x34, 0x60, 0x55])


def test_pack_full_frame_size():
    indices = np.zeros((DISPLAY_HEIGHT, DISPLAY_WIDTH), dtype=np.uint8)
    payload = pack_indices(indices)
    assert len(payload) == PAYLOAD_SIZE == 134400


def test_pack_rejects_odd_width():
    with pytest.raises(FormatError):
        pack_indices(np.zeros((2, 3), dtype=np.uint8))


@pytest.mark.parametrize('bad_value', [7, 15, -1])
def test_pack_rejects_values_outside_palette(bad_value):
    indices = np.zeros((2, 4), dtype=np.int16)
    indices[1, 2] = bad_value
    with pytest.raises(FormatError):
        pack_indices(indices)


def test_pack_rejects_non_integer_buffer():
    with pytest.raises(FormatError):
        pack_indices(np.zeros((2, 4), dtype=np.float32))


def test_unpack_recovers_packed_indices():
    rng = np.random.default_rng(7)
    indices = rng.integers(0, 7, size=(DISPLAY_HEIGHT, DISPLAY_WIDTH), dtype=np.uint8)

    recovered = unpack_indices(pack_indices(indices))

    assert np.array_equal(recovered, indices)


def test_unpack_rejects_wrong_length():
    with pytest.raises(FormatError):
        unpack_indices(b'\x00' * 10, width=4, height=4)


def test_unpack_rejects_index_outside_palette():
    with pytest.raises(FormatError):
        unpack_indices(b'\x70', width=2, height=1)


def test_render_preview_uses_palette_colors():
    indices = np.array([[0, 1], [4, 6]], dtype=np.uint8)

    preview = render_preview(indices)

    assert preview.mode == 'RGB'
    assert preview.size == (2, 2)
    assert preview.getpixel((0, 0)) == (0, 0, 0)
    assert preview.getpixel((1, 0)) == (255, 255, 255)
    assert preview.getpixel((0, 1)) == tuple(PALETTE_ARRAY[4])
    assert preview.getpixel((1, 1)) == (232, 126, 0)


def test_render_preview_rejects_bad_index():
    with pytest.raises(FormatError):
        render_preview(np.array([[9]], dtype=np.uint8))


def test_load_image_pixels_drops_alpha(tmp_path):
    path = tmp_path / 'alpha.png'
    Image.new('RGBA', (4, 2), (10, 20, 30, 128)).save(path)

    pixels = load_image_pixels(path)

    assert pixels.shape == (2, 4, 3)
    assert pixels[0, 0].tolist() == [10, 20, 30]


def test_load_image_pixels_rejects_non_image(tmp_path):
    path = tmp_path / 'notes.png'
    path.write_text('not an image')
    with pytest.raises(DecodeError):
        load_image_pixels(path)


def test_validate_dimensions():
    validate_dimensions(np.zeros((DISPLAY_HEIGHT, DISPLAY_WIDTH, 3), dtype=np.uint8))
    with pytest.raises(ValidationError, match='599x448'):
        validate_dimensions(np.zeros((DISPLAY_HEIGHT, 599, 3), dtype=np.uint8))
    with pytest.raises(ValidationError):
        validate_dimensions(np.zeros((DISPLAY_WIDTH, DISPLAY_HEIGHT, 3), dtype=np.uint8))


def test_load_image_pixels_rejects_decompression_bomb(tmp_path, monkeypatch):
    path = tmp_path / 'huge.png'
    Image.new('RGB', (100, 100), (0, 0, 0)).save(path)
    monkeypatch.setattr(Image, 'MAX_IMAGE_PIXELS', 1000)

    with pytest.raises(DecodeError):
        load_image_pixels(path)


def test_dithering_picks_same_color_as_closest_palette_index():
    rng = np.random.default_rng(11)
    colors = rng.integers(0, 256, size=(200, 3), dtype=np.uint8)
    # Midpoints between palette entries exercise the tie rule
    colors = np.concatenate([colors, (PALETTE_ARRAY[:-1].astype(int) + PALETTE_ARRAY[1:]) // 2])

    for color in colors:
        pixel = np.array(color, dtype=np.uint8).reshape(1, 1, 3)
        assert apply_floyd_steinberg_dithering(pixel)[0, 0] == closest_palette_index(color)


@pytest.mark.parametrize('first, second, expected', [
    # 7 * 2 = 14 sixteenths rounds up to +1, pushing 95 over the black/red midpoint
    ((2, 0, 0), (95, 0, 0), [0, 4]),
    # 7 * -2 = -14 sixteenths rounds to -1, not towards zero
    ((189, 0, 0), (96, 0, 0), [4, 0]),
])
def test_diffused_error_rounds_half_up(first, second, expected):
    pixels = np.array([[first, second]], dtype=np.uint8)
    assert apply_floyd_steinberg_dithering(pixels).tolist() == [expected]
