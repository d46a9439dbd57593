from .converter import convert_image, run_batch
from .errors import CapacityError, ConversionError, DecodeError, FormatError, ValidationError
from .image_helper import (
    apply_floyd_steinberg_dithering,
    closest_palette_index,
    default_color_palette,
    pack_indices,
    unpack_indices,
)
from .index_helper import IndexAssignment, OutputEntry, reconcile_indices

__version__ = '0.1.0'
