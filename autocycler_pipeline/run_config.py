from dataclasses import dataclass, field, fields, replace
from multiprocessing import cpu_count
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .read_type import ReadType

DEFAULT_READS_DIR = "reads"
DEFAULT_OUT_DIR = "."
DEFAULT_READ_TYPE = ReadType.ONT_R10
DEFAULT_FALLBACK_GENOME_SIZE = 5_000_000
DEFAULT_MIN_READ_LENGTH = 1000
DEFAULT_KEEP_PERCENT = 95
DEFAULT_SUBSAMPLE_COUNT = 4
DEFAULT_ASSEMBLERS = (
    "canu",
    "flye",
    "metamdbg",
    "miniasm",
    "necat",
    "nextdenovo",
    "plassembler",
    "raven",
)


def _default_threads() -> int:
    return max(1, cpu_count())


@dataclass(frozen=True)
class RunConfig:
    """Settings for one pipeline run. Built once at startup and handed to every stage.

    Attributes:
        reads_dir (Path): Directory scanned for input read files.
        out_dir (Path): Root under which the numbered stage directories are created.
        threads (int): Thread count passed to every external tool.
        read_type (ReadType): Sequencing technology of the reads.
        fallback_genome_size (int): Genome size used when estimation fails.
        min_read_length (int): filtlong --min_length.
        keep_percent (int): filtlong --keep_percent.
        subsample_count (int): Number of read subsets made by autocycler subsample.
        assemblers (Tuple[str, ...]): Assemblers run on every subsample.
        strict_assembly_check (bool): Require an assembly for every assembler and
            subsample before treating the assembly stage as done.
        checkm2_database (Optional[Path]): CheckM2 diamond database; quality
            assessment is skipped when unset.
        parallel_items (int): Read files processed at once.
        parallel_assemblies (int): Assembler jobs run at once for one read file.
        parallel_clusters (int): Clusters trimmed/resolved at once for one read file.
        max_retries (int): Extra attempts for a stage whose tool exits non-zero.
        check_tools (bool): Verify required executables are on PATH before starting.
    """

    reads_dir: Path = Path(DEFAULT_READS_DIR)
    out_dir: Path = Path(DEFAULT_OUT_DIR)
    threads: int = field(default_factory=_default_threads)
    read_type: ReadType = DEFAULT_READ_TYPE
    fallback_genome_size: int = DEFAULT_FALLBACK_GENOME_SIZE
    min_read_length: int = DEFAULT_MIN_READ_LENGTH
    keep_percent: int = DEFAULT_KEEP_PERCENT
    subsample_count: int = DEFAULT_SUBSAMPLE_COUNT
    assemblers: Tuple[str, ...] = DEFAULT_ASSEMBLERS
    strict_assembly_check: bool = False
    checkm2_database: Optional[Path] = None
    parallel_items: int = 1
    parallel_assemblies: int = 1
    parallel_clusters: int = 1
    max_retries: int = 0
    check_tools: bool = True

    def __post_init__(self):
        # Normalise types so YAML and CLI input can be passed straight through
        object.__setattr__(self, "reads_dir", Path(self.reads_dir))
        object.__setattr__(self, "out_dir", Path(self.out_dir))
        object.__setattr__(self, "read_type", ReadType(self.read_type))
        object.__setattr__(self, "assemblers", tuple(self.assemblers))
        if self.checkm2_database is not None:
            object.__setattr__(self, "checkm2_database", Path(self.checkm2_database))
        self._validate()

    def _validate(self) -> None:
        for name in (
            "threads",
            "fallback_genome_size",
            "min_read_length",
            "subsample_count",
            "parallel_items",
            "parallel_assemblies",
            "parallel_clusters",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not 0 < self.keep_percent <= 100:
            raise ValueError(f"keep_percent must be in (0, 100], got {self.keep_percent}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not self.assemblers:
            raise ValueError("At least one assembler must be configured")
        if len(set(self.assemblers)) < len(self.assemblers):
            raise ValueError(f"Assemblers are not unique: {list(self.assemblers)}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunConfig":
        """Build a RunConfig from a parsed YAML mapping; missing keys take defaults."""
        if not isinstance(config, dict):
            raise ValueError(f"Configuration must be a mapping, got {type(config).__name__}")
        # A section key with no body loads as None
        inputs = config.get("input") or {}
        output = config.get("output") or {}
        run = config.get("run") or {}
        reads = config.get("reads") or {}
        assembly = config.get("assembly") or {}
        quality = config.get("quality") or {}
        for name, section in (
            ("input", inputs),
            ("output", output),
            ("run", run),
            ("reads", reads),
            ("assembly", assembly),
            ("quality", quality),
        ):
            if not isinstance(section, dict):
                raise ValueError(f"Config section {name!r} must be a mapping")

        return cls(
            reads_dir=inputs.get("reads_dir", DEFAULT_READS_DIR),
            out_dir=output.get("out_dir", DEFAULT_OUT_DIR),
            threads=run.get("threads", _default_threads()),
            read_type=run.get("read_type", DEFAULT_READ_TYPE),
            parallel_items=run.get("parallel_items", 1),
            parallel_assemblies=run.get("parallel_assemblies", 1),
            parallel_clusters=run.get("parallel_clusters", 1),
            max_retries=run.get("max_retries", 0),
            check_tools=run.get("check_tools", True),
            fallback_genome_size=reads.get(
                "fallback_genome_size", DEFAULT_FALLBACK_GENOME_SIZE
            ),
            min_read_length=reads.get("min_read_length", DEFAULT_MIN_READ_LENGTH),
            keep_percent=reads.get("keep_percent", DEFAULT_KEEP_PERCENT),
            subsample_count=reads.get("subsample_count", DEFAULT_SUBSAMPLE_COUNT),
            assemblers=assembly.get("assemblers", DEFAULT_ASSEMBLERS),
            strict_assembly_check=assembly.get("strict_assembly_check", False),
            checkm2_database=quality.get("checkm2_database"),
        )

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_yaml_config(self) -> Dict[str, Any]:
        """Convert to a YAML-compatible dictionary matching the layout read by from_config."""
        return {
            "input": {"reads_dir": str(self.reads_dir)},
            "output": {"out_dir": str(self.out_dir)},
            "run": {
                "threads": self.threads,
                "read_type": self.read_type.value,
                "parallel_items": self.parallel_items,
                "parallel_assemblies": self.parallel_assemblies,
                "parallel_clusters": self.parallel_clusters,
                "max_retries": self.max_retries,
                "check_tools": self.check_tools,
            },
            "reads": {
                "fallback_genome_size": self.fallback_genome_size,
                "min_read_length": self.min_read_length,
                "keep_percent": self.keep_percent,
                "subsample_count": self.subsample_count,
            },
            "assembly": {
                "assemblers": list(self.assemblers),
                "strict_assembly_check": self.strict_assembly_check,
            },
            "quality": {
                "checkm2_database": (
                    str(self.checkm2_database) if self.checkm2_database else None
                ),
            },
        }

    def write_config(self, yaml_path) -> None:
        """Write the configuration to a YAML file.

        Args:
            yaml_path: Path where the YAML file should be written
        """
        with open(yaml_path, "w") as f:
            yaml.dump(self.to_yaml_config(), f, default_flow_style=False)
