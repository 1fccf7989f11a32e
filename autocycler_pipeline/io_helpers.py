from enum import Enum
from pathlib import Path
from typing import List, NamedTuple

import yaml

from .errors import NoInputFound

PathLike = str | Path

RAW_READ_EXTENSIONS = (".fastq.gz", ".fastq", ".fq.gz", ".fq")
CONVERTED_EXTENSIONS = (".bam",)
# Matched longest first
RECOGNISED_EXTENSIONS = tuple(
    sorted(RAW_READ_EXTENSIONS + CONVERTED_EXTENSIONS, key=len, reverse=True)
)


class InputKind(str, Enum):
    """How a read file enters the pipeline."""

    RAW_READS = "raw_reads"
    CONVERTED = "converted"


class WorkItem(NamedTuple):
    item_id: str  # filename stem, all read extensions removed
    path: Path
    kind: InputKind


def strip_read_extensions(filename: str) -> str:
    """Remove every recognised read extension from the end of a file name.

    Extensions are matched longest first and stripped repeatedly, so
    "isolate.fq.fastq.gz" becomes "isolate". A name is never stripped down to the
    empty string.
    """
    name = filename
    stripped = True
    while stripped:
        stripped = False
        for ext in RECOGNISED_EXTENSIONS:
            if name.lower().endswith(ext) and len(name) > len(ext):
                name = name[: -len(ext)]
                stripped = True
                break
    return name


def _input_kind(filename: str) -> InputKind | None:
    lower = filename.lower()
    if lower.endswith(CONVERTED_EXTENSIONS):
        return InputKind.CONVERTED
    if lower.endswith(RAW_READ_EXTENSIONS):
        return InputKind.RAW_READS
    return None


def discover_work_items(reads_dir: PathLike) -> List[WorkItem]:
    """Find every read file directly inside reads_dir and build one WorkItem each.

    Args:
        reads_dir: Directory containing .fastq(.gz), .fq(.gz) or .bam files

    Returns:
        WorkItems sorted by identifier

    Raises:
        ValueError: If reads_dir is not a directory or two files share an identifier
        NoInputFound: If no recognised read files are present
    """
    reads_dir = Path(reads_dir)
    if not reads_dir.is_dir():
        raise ValueError(f"Reads directory does not exist: {reads_dir}")

    items = {}
    for path in sorted(reads_dir.iterdir()):
        if not path.is_file():
            continue
        kind = _input_kind(path.name)
        if kind is None:
            continue
        item_id = strip_read_extensions(path.name)
        if item_id in items:
            raise ValueError(
                f"Read files {items[item_id].path.name} and {path.name} "
                f"both map to sample {item_id}"
            )
        items[item_id] = WorkItem(item_id, path, kind)

    if not items:
        raise NoInputFound(f"No read files found in {reads_dir}")
    return [items[k] for k in sorted(items)]


def _dir_nonempty(path: PathLike) -> bool:
    path = Path(path)
    return path.is_dir() and any(path.iterdir())


def load_config(yaml_path):
    with open(yaml_path, "r") as file:
        config = yaml.safe_load(file)
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {yaml_path} must contain a mapping of sections")
    return config
