from typing import NamedTuple, Sequence, Tuple

from PIL import Image, UnidentifiedImageError
import numpy as np

from .errors import DecodeError, FormatError, ValidationError

# Waveshare 5.65" 7-color panel
DISPLAY_WIDTH = 600
DISPLAY_HEIGHT = 448
PAYLOAD_SIZE = DISPLAY_WIDTH * DISPLAY_HEIGHT // 2


class Color(NamedTuple):
    r: int
    g: int
    b: int


# Define the 7-color palette, the position of each color is the index the panel expects
default_color_palette = (
    Color(0, 0, 0),        # Black
    Color(255, 255, 255),  # White
    Color(67, 138, 28),    # Green
    Color(100, 64, 255),   # Blue
    Color(191, 0, 0),      # Red
    Color(255, 243, 56),   # Yellow
    Color(232, 126, 0),    # Orange
)

PALETTE_ARRAY = np.array(default_color_palette, dtype=np.uint8)

# Larger than any squared RGB distance
MAX_DISTANCE = 3 * 255 * 255 + 1


def closest_palette_index(rgb: Sequence[int], target_color_palette: Sequence[Color] = default_color_palette) -> int:
    """Find the index of the closest color in the palette.

    Ties keep the earlier palette entry, a later one has to be strictly closer.
    """
    # Cast to int to prevent uint8 overflow during calculations
    r, g, b = int(rgb[0]), int(rgb[1]), int(rgb[2])
    min_dist = float('inf')
    closest_index = 0
    for index, (pr, pg, pb) in enumerate(target_color_palette):
        dist = (r - pr) * (r - pr) + (g - pg) * (g - pg) + (b - pb) * (b - pb)
        if dist < min_dist:
            min_dist = dist
            closest_index = index
    return closest_index


def apply_floyd_steinberg_dithering(pixels: np.ndarray, target_color_palette: Sequence[Color] = default_color_palette) -> np.ndarray:
    """Apply Floyd-Steinberg dithering to an RGB pixel buffer.

    Pixels are visited row by row, left to right. The quantization error of
    each pixel goes to its unvisited neighbours (east 7/16, south-west 3/16,
    south 5/16, south-east 1/16), anything past the border is dropped.

    Only integer arithmetic is used so the output is identical on every
    platform. Errors are carried in sixteenths in two row buffers, the row
    being scanned and the one below it.

    Returns a (height, width) uint8 array of palette indices.
    """
    pixels = np.asarray(pixels, dtype=np.uint8)
    height, width = pixels.shape[:2]
    palette = [tuple(int(c) for c in color) for color in target_color_palette]
    indices = np.zeros((height, width), dtype=np.uint8)

    current_errors = [0] * (width * 3)
    next_errors = [0] * (width * 3)
    empty_row = [0] * (width * 3)

    for y in range(height):
        row = pixels[y, :, :3].tolist()
        row_indices = [0] * width
        has_next_row = y + 1 < height

        for x in range(width):
            base = x * 3
            raw = row[x]
            r = raw[0] + (current_errors[base] + 8) // 16
            g = raw[1] + (current_errors[base + 1] + 8) // 16
            b = raw[2] + (current_errors[base + 2] + 8) // 16
            r = 0 if r < 0 else (255 if r > 255 else r)
            g = 0 if g < 0 else (255 if g > 255 else g)
            b = 0 if b < 0 else (255 if b > 255 else b)

            # Same search as closest_palette_index, inlined on the scalars
            index = 0
            min_dist = MAX_DISTANCE
            candidate = 0
            for pr, pg, pb in palette:
                dist = (r - pr) * (r - pr) + (g - pg) * (g - pg) + (b - pb) * (b - pb)
                if dist < min_dist:
                    min_dist = dist
                    index = candidate
                candidate += 1
            row_indices[x] = index
            if not min_dist:
                continue

            pr, pg, pb = palette[index]
            er = r - pr
            eg = g - pg
            eb = b - pb
            has_east = x + 1 < width
            if has_east:
                current_errors[base + 3] += er * 7
                current_errors[base + 4] += eg * 7
                current_errors[base + 5] += eb * 7
            if has_next_row:
                if x > 0:
                    next_errors[base - 3] += er * 3
                    next_errors[base - 2] += eg * 3
                    next_errors[base - 1] += eb * 3
                next_errors[base] += er * 5
                next_errors[base + 1] += eg * 5
                next_errors[base + 2] += eb * 5
                if has_east:
                    next_errors[base + 3] += er
                    next_errors[base + 4] += eg
                    next_errors[base + 5] += eb

        indices[y] = row_indices
        current_errors, next_errors = next_errors, current_errors
        next_errors[:] = empty_row

    return indices


def pack_indices(indices: np.ndarray) -> bytes:
    """Pack palette indices two pixels per byte, the left pixel in the high nibble."""
    indices = np.asarray(indices)
    if indices.ndim != 2:
        raise FormatError(f"Expected a 2-D index buffer, got shape {indices.shape}")
    if not np.issubdtype(indices.dtype, np.integer):
        raise FormatError(f"Expected integer palette indices, got {indices.dtype}")

    height, width = indices.shape
    if width % 2:
        raise FormatError(f"Cannot pack odd width {width}, each byte holds two pixels")
    if indices.size and (indices.min() < 0 or indices.max() >= len(default_color_palette)):
        raise FormatError(f"Palette index out of range 0-{len(default_color_palette) - 1}")

    indices = indices.astype(np.uint8)
    packed = (indices[:, 0::2] << 4) | indices[:, 1::2]
    return packed.tobytes()


def unpack_indices(payload: bytes, width: int = DISPLAY_WIDTH, height: int = DISPLAY_HEIGHT) -> np.ndarray:
    """Inverse of pack_indices."""
    if width % 2:
        raise FormatError(f"Cannot unpack odd width {width}, each byte holds two pixels")
    expected = width * height // 2
    if len(payload) != expected:
        raise FormatError(f"Payload is {len(payload)} bytes, expected {expected} for {width}x{height}")

    packed = np.frombuffer(payload, dtype=np.uint8).reshape(height, width // 2)
    indices = np.empty((height, width), dtype=np.uint8)
    indices[:, 0::2] = packed >> 4
    indices[:, 1::2] = packed & 0x0F
    if indices.size and indices.max() >= len(default_color_palette):
        raise FormatError(f"Payload holds palette index {int(indices.max())}, outside 0-{len(default_color_palette) - 1}")
    return indices


def render_preview(indices: np.ndarray, target_color_palette: Sequence[Color] = default_color_palette) -> Image.Image:
    """Map dithered indices back to their palette colors for a viewable preview."""
    indices = np.asarray(indices)
    palette = np.array(target_color_palette, dtype=np.uint8)
    if indices.size and (indices.min() < 0 or indices.max() >= len(palette)):
        raise FormatError(f"Palette index out of range 0-{len(palette) - 1}")
    return Image.fromarray(palette[indices])


def load_image_pixels(image_path) -> np.ndarray:
    """Decode an image file into a (height, width, 3) uint8 RGB buffer."""
    try:
        with Image.open(image_path) as img:
            img = img.convert('RGB')
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Failed to decode image {image_path}: {e}") from e
    return np.asarray(img, dtype=np.uint8)


def validate_dimensions(pixels: np.ndarray, source=None, size: Tuple[int, int] = (DISPLAY_WIDTH, DISPLAY_HEIGHT)):
    """Reject any buffer that isn't exactly the panel size, images are never resized."""
    height, width = pixels.shape[:2]
    if (width, height) != size:
        raise ValidationError(
            f"{source if source is not None else 'image'} has dimensions {width}x{height}, "
            f"expected {size[0]}x{size[1]}"
        )
