import re
import threading
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import CapacityError, ValidationError

MIN_INDEX = 1
MAX_INDEX = 9999

# NNNN-basename.ext, the basename may itself contain dashes and dots
OUTPUT_NAME_PATTERN = re.compile(r'^(\d{4})-(.+)\.([A-Za-z0-9]+)$')

BIN_EXTENSION = '.bin'
PREVIEW_EXTENSION = '.png'


@dataclass(frozen=True)
class OutputEntry:
    index: int
    basename: str
    extension: str

    @property
    def filename(self) -> str:
        return output_filename(self.index, self.basename, self.extension)


@dataclass(frozen=True)
class IndexAssignment:
    index: int
    basename: str
    reused: bool = False

    def filename(self, extension: str = BIN_EXTENSION) -> str:
        return output_filename(self.index, self.basename, extension)


def output_filename(index: int, basename: str, extension: str = BIN_EXTENSION) -> str:
    if not extension.startswith('.'):
        extension = f'.{extension}'
    return f'{index:04d}-{basename}{extension}'


def parse_output_name(filename: str) -> Optional[OutputEntry]:
    """Parse NNNN-basename.ext, anything else (including index 0000) gives None."""
    match = OUTPUT_NAME_PATTERN.match(filename)
    if not match:
        return None
    index = int(match.group(1))
    if index < MIN_INDEX:
        return None
    return OutputEntry(index=index, basename=match.group(2), extension=f'.{match.group(3)}')


def scan_output_directory(directory: Path) -> List[OutputEntry]:
    """Read the indexed entries of an output directory, sorted by index then name.

    Files that don't follow the naming scheme are ignored. OSError propagates
    if the directory can't be listed.
    """
    entries = []
    for child in Path(directory).iterdir():
        if not child.is_file():
            continue
        entry = parse_output_name(child.name)
        if entry is not None:
            entries.append(entry)
    return sorted(entries, key=lambda e: (e.index, e.basename, e.extension))


def build_index_lookup(existing: Iterable[OutputEntry]) -> Dict[str, int]:
    """Map basename -> index.

    A basename can show up under several indices after images were dropped
    and re-added between runs. The .bin entry wins over other extensions,
    then the lowest index.
    """
    best: Dict[str, OutputEntry] = {}
    for entry in existing:
        current = best.get(entry.basename)
        if current is None or _lookup_rank(entry) < _lookup_rank(current):
            best[entry.basename] = entry
    return {basename: entry.index for basename, entry in best.items()}


def _lookup_rank(entry: OutputEntry):
    return (entry.extension != BIN_EXTENSION, entry.index)


def reconcile_indices(existing: Iterable[OutputEntry], candidates: Sequence[str]) -> List[IndexAssignment]:
    """Assign an index to every candidate basename, in candidate order.

    Basenames already in the directory keep their index so their files are
    rewritten in place. New basenames are numbered after the highest existing
    index, in the order they appear in ``candidates``. Existing entries with
    no candidate are left alone.

    Raises CapacityError if a new index would go past 9999, and
    ValidationError if ``candidates`` holds the same basename twice.
    """
    existing = list(existing)
    seen = set()
    for basename in candidates:
        if basename in seen:
            raise ValidationError(f"Duplicate basename {basename!r} in batch")
        seen.add(basename)

    lookup = build_index_lookup(existing)
    new_basenames = [basename for basename in candidates if basename not in lookup]

    last_index = max((entry.index for entry in existing), default=0)
    if last_index + len(new_basenames) > MAX_INDEX:
        raise CapacityError(
            f"Ran out of indices: {len(new_basenames)} new image(s) after index {last_index} "
            f"would exceed {MAX_INDEX}"
        )

    new_indices = {basename: last_index + offset for offset, basename in enumerate(new_basenames, start=1)}

    assignments = []
    for basename in candidates:
        if basename in lookup:
            assignments.append(IndexAssignment(index=lookup[basename], basename=basename, reused=True))
        else:
            assignments.append(IndexAssignment(index=new_indices[basename], basename=basename))
    return assignments


class OutputDirectoryTracker:
    """Owns one output directory for the length of a run.

    Reconciliation and the writes that follow it must not interleave with
    another batch on the same directory, ``lock`` hands out one lock per
    resolved path for that. A lock lives as long as some tracker holds it.
    """

    _locks: "weakref.WeakValueDictionary[Path, threading.Lock]" = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(self, output_path: Path):
        self.output_path = Path(output_path)

        # Create output directory if it doesn't exist, FileExistsError if it's a file
        self.output_path.mkdir(parents=True, exist_ok=True)
        self._lock = self._lock_for(self.output_path.resolve())

    @classmethod
    def _lock_for(cls, key: Path) -> threading.Lock:
        with cls._locks_guard:
            lock = cls._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                cls._locks[key] = lock
            return lock

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def get_entries(self) -> List[OutputEntry]:
        return scan_output_directory(self.output_path)

    def assign(self, candidates: Sequence[str]) -> List[IndexAssignment]:
        return reconcile_indices(self.get_entries(), candidates)

    def path_for(self, assignment: IndexAssignment, extension: str = BIN_EXTENSION) -> Path:
        return self.output_path / assignment.filename(extension)
