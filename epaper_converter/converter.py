"""Convert images for a Waveshare 5.65" 7-color e-paper frame.

Input images must already be 600x448. Every image is dithered onto the
panel's 7-color palette and written as NNNN-name.bin into the output
directory. Images seen in an earlier run keep their number, new ones are
numbered after the highest existing index so the frame can cycle through the
set without repeats.
"""
import argparse
import glob
import json
import logging
import os
import random
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import CapacityError, ConversionError, FormatError, ValidationError
from .image_helper import (
    apply_floyd_steinberg_dithering,
    load_image_pixels,
    pack_indices,
    render_preview,
    validate_dimensions,
)
from .index_helper import (
    BIN_EXTENSION,
    PREVIEW_EXTENSION,
    IndexAssignment,
    OutputDirectoryTracker,
)

###########
# GLOBALS #
###########

logger = logging.getLogger(__name__)

CONFIG_FILE = './config/epaper.json'
DEFAULT_CONFIG = {
    'randomize': False,
    'write_preview': False,
    'output_directory': None,
    'workers': None,
    'seed': None,
}


def load_config(config_file: Optional[str] = None) -> dict:
    config_file = config_file or os.getenv('EPAPER_CONFIG', CONFIG_FILE)
    try:
        with open(config_file, 'r') as f:
            loaded = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return DEFAULT_CONFIG.copy()
    if not isinstance(loaded, dict):
        logger.warning("Ignoring config file %s, expected a JSON object", config_file)
        return DEFAULT_CONFIG.copy()
    return {**DEFAULT_CONFIG, **loaded}


def save_config(config: dict, config_file: Optional[str] = None):
    config_file = Path(config_file or os.getenv('EPAPER_CONFIG', CONFIG_FILE))
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, 'w') as f:
        json.dump(config, f, indent=4)


###########
# RESULTS #
###########

@dataclass(frozen=True)
class ConvertedImage:
    source: Path
    basename: str
    indices: np.ndarray
    payload: bytes


@dataclass
class BatchResult:
    assignments: List[IndexAssignment] = field(default_factory=list)
    skipped: List[Tuple[Path, str]] = field(default_factory=list)
    written: List[Path] = field(default_factory=list)


############
# PIPELINE #
############

def convert_image(source) -> ConvertedImage:
    """Decode, validate, dither and pack a single image.

    Touches no shared state and returns picklable data so it can run in a
    worker process.
    """
    source = Path(source)
    pixels = load_image_pixels(source)
    validate_dimensions(pixels, source)
    indices = apply_floyd_steinberg_dithering(pixels)
    payload = pack_indices(indices)
    return ConvertedImage(source=source, basename=source.stem, indices=indices, payload=payload)


def _try_convert(source):
    try:
        return convert_image(source)
    except (ValidationError, FormatError) as e:
        return e


def convert_all(sources: Sequence[Path], workers: Optional[int] = None):
    """Yield one conversion outcome per source, in source order.

    The dithering loop is pure Python, so images are spread over worker
    processes. A single worker (or a single image) converts in-process.
    """
    workers = workers or os.cpu_count() or 4
    if workers == 1 or len(sources) <= 1:
        yield from map(_try_convert, sources)
        return
    with ProcessPoolExecutor(max_workers=min(workers, len(sources))) as executor:
        yield from executor.map(_try_convert, sources)


def _write_atomically(path: Path, write):
    """Write through a hidden temp file and move it into place.

    Either the complete file appears under ``path`` or the error propagates,
    a half-written payload never takes the final name.
    """
    tmp_path = path.with_name(f'.{path.name}.tmp')
    try:
        with open(tmp_path, 'wb') as f:
            write(f)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_output(tracker: OutputDirectoryTracker, assignment: IndexAssignment,
                 converted: ConvertedImage, write_preview: bool = False) -> List[Path]:
    written = []

    bin_path = tracker.path_for(assignment, BIN_EXTENSION)
    _write_atomically(bin_path, lambda f: f.write(converted.payload))
    logger.debug("Wrote %s (%d bytes)", bin_path, len(converted.payload))
    written.append(bin_path)

    # Map the dithered indices back to the palette so the result can be checked
    # without loading the .bin on the frame
    if write_preview:
        png_path = tracker.path_for(assignment, PREVIEW_EXTENSION)
        preview = render_preview(converted.indices)
        _write_atomically(png_path, lambda f: preview.save(f, format='PNG'))
        logger.debug("Wrote %s", png_path)
        written.append(png_path)

    return written


def run_batch(sources: Sequence, output_directory, randomize: bool = False, write_preview: bool = False,
              workers: Optional[int] = None, rng: Optional[random.Random] = None) -> BatchResult:
    """Convert a batch of images into the indexed output directory.

    Images that are missing, undecodable or not 600x448 are skipped with a
    warning and never take an index. CapacityError and OSError abort the run,
    a CapacityError always before anything is written.
    """
    result = BatchResult()

    existing_sources = []
    for source in sources:
        source = Path(source)
        if source.exists():
            existing_sources.append(source)
        else:
            logger.warning("Skipping %s: source file does not exist", source)
            result.skipped.append((source, "source file does not exist"))

    tracker = OutputDirectoryTracker(Path(output_directory))

    converted_images = []
    seen_basenames = set()
    total = len(existing_sources)
    outcomes = convert_all(existing_sources, workers)
    # outcomes goes first so zip drains it and the pool shuts down
    for position, (outcome, source) in enumerate(zip(outcomes, existing_sources), start=1):
        if isinstance(outcome, ConversionError):
            logger.warning("Skipping %s: %s", source, outcome)
            result.skipped.append((source, str(outcome)))
            continue
        if outcome.basename in seen_basenames:
            reason = f"another image in this batch is already named {outcome.basename!r}"
            logger.warning("Skipping %s: %s", source, reason)
            result.skipped.append((source, reason))
            continue
        seen_basenames.add(outcome.basename)
        converted_images.append(outcome)
        logger.info("[%d/%d] Dithered %s", position, total, source)

    if randomize:
        (rng or random.Random()).shuffle(converted_images)

    by_basename = {converted.basename: converted for converted in converted_images}
    with tracker.lock:
        result.assignments = tracker.assign([converted.basename for converted in converted_images])
        for assignment in result.assignments:
            result.written.extend(
                write_output(tracker, assignment, by_basename[assignment.basename], write_preview)
            )

    reused = sum(1 for assignment in result.assignments if assignment.reused)
    logger.info("Wrote %d image(s) to %s (%d updated, %d new, %d skipped)",
                len(result.assignments), tracker.output_path, reused,
                len(result.assignments) - reused, len(result.skipped))
    return result


#######
# CLI #
#######

def expand_sources(patterns: Sequence[str]) -> List[str]:
    """Expand wildcards ourselves so they work the same in every shell."""
    sources = []
    for pattern in patterns:
        matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else []
        # Keep unmatched patterns so they get reported as missing files
        sources.extend(matches or [pattern])
    return sources


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='epaper-convert',
        description='Convert images for display on a WaveShare 5.65" 7-color E-Paper display. '
                    'Input images should be 600 x 448 pixels.',
    )
    parser.add_argument('sources', metavar='IMAGE', nargs='+',
                        help='Input image files to be converted')
    parser.add_argument('-o', '--output',
                        help='Destination folder for E-Paper images')
    parser.add_argument('-p', '--png', action='store_true', default=None,
                        help='Also save PNG previews of the dithered images')
    parser.add_argument('-r', '--random', action='store_true', default=None,
                        help="Randomize order of images that don't already exist in the output directory")
    parser.add_argument('--workers', type=int,
                        help='Number of worker processes dithering images (default: CPU count)')
    parser.add_argument('--seed', type=int,
                        help='Seed for --random, makes the shuffled order reproducible')
    parser.add_argument('--config',
                        help=f'JSON config file (default: $EPAPER_CONFIG or {CONFIG_FILE})')
    parser.add_argument('--save-config', action='store_true',
                        help='Write the effective options back to the config file')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose logging')
    return parser


def resolve_options(args: argparse.Namespace, config: dict) -> dict:
    """Command-line flags win over the config file, which wins over the environment."""
    options = dict(config)
    if args.random is not None:
        options['randomize'] = args.random
    if args.png is not None:
        options['write_preview'] = args.png
    if args.output:
        options['output_directory'] = args.output
    elif not options.get('output_directory'):
        options['output_directory'] = os.getenv('EPAPER_OUTPUT_DIR')
    if args.workers is not None:
        options['workers'] = args.workers
    if args.seed is not None:
        options['seed'] = args.seed
    return options


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(message)s',
    )

    options = resolve_options(args, load_config(args.config))
    if not options['output_directory']:
        parser.error('an output directory is required (-o, config file or EPAPER_OUTPUT_DIR)')
    if args.save_config:
        save_config(options, args.config)

    try:
        run_batch(
            expand_sources(args.sources),
            options['output_directory'],
            randomize=bool(options['randomize']),
            write_preview=bool(options['write_preview']),
            workers=options['workers'],
            rng=random.Random(options['seed']),
        )
    except CapacityError as e:
        logger.error("Error: %s", e)
        return 1
    except OSError as e:
        logger.error("Error: %s", e)
        return 1
    return 0
