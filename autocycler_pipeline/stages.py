"""
Stage descriptors for the Autocycler pipeline.

A Stage couples a completion predicate (a pure filesystem check) with an executor
that invokes the external tool when the predicate does not hold. The pipeline is
expressed as three ordered tables plus one run-level stage:

    ITEM_PREPARE_STAGES  per sample, up to and including clustering
    CLUSTER_STAGES       per QC-passing cluster, discovered after clustering
    ITEM_FINISH_STAGES   per sample, combine -> polish -> finalize
    QUALITY_STAGE        once, over every final assembly

The driver in pipeline.py walks these tables; nothing here decides ordering.
"""

import logging
from dataclasses import dataclass, field
from functools import cached_property
from itertools import chain
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import EstimationFailed
from .io_helpers import InputKind, WorkItem, _dir_nonempty
from .pipeline_steps import (
    QUALITY_LOG,
    RESOLVED_GFA,
    SUBSAMPLE_GLOB,
    TRIM_GLOB,
    ItemPaths,
    _assemble_subsamples,
    _assembly_prefix,
    _assess_quality,
    _cluster_contigs,
    _combine_clusters,
    _compress_assemblies,
    _convert_bam,
    _copy_final_assembly,
    _estimate_genome_size,
    _filter_reads,
    _final_dir,
    _polish_consensus,
    _quality_report_path,
    _read_cached_genome_size,
    _resolve_cluster,
    _subsample_reads,
    _trim_cluster,
    _write_cached_genome_size,
)
from .run_config import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Per-sample state carried through the item-level stages of one run."""

    config: RunConfig
    item: WorkItem
    outputs: Dict[str, Optional[Path]] = field(default_factory=dict)
    genome_size: Optional[int] = None

    @property
    def label(self) -> str:
        return self.item.item_id

    @property
    def source(self) -> Path:
        return self.item.path

    @cached_property
    def paths(self) -> ItemPaths:
        return ItemPaths(self.config.out_dir, self.item.item_id)

    @property
    def log_file(self) -> Path:
        return self.paths.log_file


@dataclass
class ClusterContext:
    """State for one QC-passing cluster of a sample."""

    parent: StageContext
    cluster_dir: Path
    outputs: Dict[str, Optional[Path]] = field(default_factory=dict)

    @property
    def config(self) -> RunConfig:
        return self.parent.config

    @property
    def label(self) -> str:
        return f"{self.parent.label}/{self.cluster_dir.name}"

    @property
    def source(self) -> Path:
        return self.cluster_dir

    @property
    def log_file(self) -> Path:
        return self.parent.log_file


@dataclass
class RunContext:
    """State for the run-level stage that spans every sample."""

    config: RunConfig
    outputs: Dict[str, Optional[Path]] = field(default_factory=dict)
    label: str = "all samples"

    @property
    def source(self) -> Path:
        return _final_dir(self.config.out_dir)

    @property
    def log_file(self) -> Path:
        return _final_dir(self.config.out_dir) / QUALITY_LOG


CompletionPredicate = Callable[[Any], bool]
PathTemplate = Callable[[Any], Path]


def _always(ctx) -> bool:
    return True


@dataclass(frozen=True)
class Stage:
    """One step of the pipeline.

    Attributes:
        name: Unique stage name, used for dependencies and reporting
        output: Path of the artifact the stage produces, as a function of the context
        is_complete: Predicate deciding whether the stage already ran
        execute: Runs the stage given (context, upstream path); returns its output path
        input_from: Stage whose output is passed as upstream; None means ctx.source
        requires: Stages whose predicates must hold before execute is called
        applies: Whether the stage is relevant for a context at all
        optional: Downgrade a tool failure in this stage to a warning
    """

    name: str
    output: PathTemplate
    is_complete: CompletionPredicate
    execute: Callable[[Any, Optional[Path]], Path]
    input_from: Optional[str] = None
    requires: Tuple[str, ...] = ()
    applies: Callable[[Any], bool] = _always
    optional: bool = False


# Completion predicates


def file_exists(path_fn: PathTemplate) -> CompletionPredicate:
    return lambda ctx: path_fn(ctx).is_file()


def dir_nonempty(path_fn: PathTemplate) -> CompletionPredicate:
    return lambda ctx: _dir_nonempty(path_fn(ctx))


def glob_exists(path_fn: PathTemplate, pattern: str) -> CompletionPredicate:
    return lambda ctx: path_fn(ctx).is_dir() and any(path_fn(ctx).glob(pattern))


def glob_count_at_least(
    path_fn: PathTemplate, pattern: str, count_fn: Callable[[Any], int]
) -> CompletionPredicate:
    def predicate(ctx) -> bool:
        directory = path_fn(ctx)
        if not directory.is_dir():
            return False
        return sum(1 for p in directory.glob(pattern) if p.is_file()) >= count_fn(ctx)

    return predicate


def all_exist(paths_fn: Callable[[Any], list]) -> CompletionPredicate:
    return lambda ctx: all(p.is_file() for p in paths_fn(ctx))


# Genome size


def resolve_genome_size(ctx: StageContext) -> int:
    """Genome size for this sample: the value found this run, else the cached
    estimate, else the configured fallback."""
    if ctx.genome_size is not None:
        return ctx.genome_size

    fallback = ctx.config.fallback_genome_size
    cache = ctx.paths.genome_size_file
    if cache.is_file():
        try:
            ctx.genome_size = _read_cached_genome_size(cache)
            logger.info(f"{ctx.label}: using cached genome size {ctx.genome_size}")
        except EstimationFailed as e:
            # Removed so the next run estimates again
            cache.unlink()
            logger.warning(f"{ctx.label}: {e}; using fallback value {fallback}")
            ctx.genome_size = fallback
    else:
        logger.warning(f"{ctx.label}: no genome size available; using fallback value {fallback}")
        ctx.genome_size = fallback
    return ctx.genome_size


# Executors. Each takes (context, upstream path) and returns the stage's output path.


def _normalize(ctx: StageContext, upstream: Path) -> Path:
    return _convert_bam(upstream, ctx.paths.converted_fastq, ctx.config.threads, ctx.log_file)


def _filter(ctx: StageContext, upstream: Path) -> Path:
    return _filter_reads(
        upstream,
        ctx.paths.filtered_fastq,
        ctx.config.min_read_length,
        ctx.config.keep_percent,
        ctx.log_file,
    )


def _size_estimate(ctx: StageContext, upstream: Path) -> Path:
    cache = ctx.paths.genome_size_file
    try:
        genome_size = _estimate_genome_size(upstream, ctx.config.threads, ctx.log_file)
    except EstimationFailed as e:
        # Fallback values are never cached; the next run estimates again
        ctx.genome_size = ctx.config.fallback_genome_size
        logger.warning(
            f"{ctx.label}: could not determine genome size ({e}); "
            f"using fallback value {ctx.genome_size}"
        )
        return cache

    logger.info(f"{ctx.label}: detected genome size {genome_size}")
    _write_cached_genome_size(cache, genome_size)
    ctx.genome_size = genome_size
    return cache


def _subsample(ctx: StageContext, upstream: Path) -> Path:
    return _subsample_reads(
        upstream,
        ctx.paths.subsampled_dir,
        resolve_genome_size(ctx),
        ctx.config.subsample_count,
        ctx.log_file,
    )


def _assemble(ctx: StageContext, upstream: Path) -> Path:
    return _assemble_subsamples(
        upstream,
        ctx.paths.assemblies_dir,
        ctx.config.assemblers,
        ctx.config.subsample_count,
        ctx.config.read_type,
        ctx.config.threads,
        resolve_genome_size(ctx),
        ctx.log_file,
        num_parallel=ctx.config.parallel_assemblies,
    )


def _expected_assemblies(ctx: StageContext) -> list:
    return [
        _assembly_prefix(ctx.paths.assemblies_dir, assembler, i).with_suffix(".fasta")
        for assembler in ctx.config.assemblers
        for i in range(1, ctx.config.subsample_count + 1)
    ]


def _assemblies_complete(ctx: StageContext) -> bool:
    if ctx.config.strict_assembly_check:
        return all_exist(_expected_assemblies)(ctx)
    return _dir_nonempty(ctx.paths.assemblies_dir)


def _compress(ctx: StageContext, upstream: Path) -> Path:
    return _compress_assemblies(upstream, ctx.paths.autocycler_dir, ctx.log_file)


def _cluster(ctx: StageContext, upstream: Path) -> Path:
    return _cluster_contigs(upstream, ctx.log_file)


def _trim(ctx: ClusterContext, upstream: Path) -> Path:
    return _trim_cluster(upstream, ctx.log_file)


def _resolve(ctx: ClusterContext, upstream: Path) -> Path:
    return _resolve_cluster(ctx.cluster_dir, ctx.log_file)


def _combine(ctx: StageContext, upstream: Optional[Path]) -> Path:
    return _combine_clusters(ctx.paths.autocycler_dir, ctx.paths.qc_pass_dir, ctx.log_file)


def _polish(ctx: StageContext, upstream: Optional[Path]) -> Path:
    return _polish_consensus(
        ctx.paths.consensus_fasta,
        ctx.paths.filtered_fastq,
        ctx.paths.polish_dir,
        ctx.config.read_type,
        ctx.config.threads,
        ctx.log_file,
    )


def _finalize(ctx: StageContext, upstream: Optional[Path]) -> Path:
    return _copy_final_assembly(
        ctx.paths.polished_fasta, ctx.paths.consensus_fasta, ctx.paths.final_fasta
    )


def _quality(ctx: RunContext, upstream: Path) -> Path:
    return _assess_quality(
        upstream, ctx.config.checkm2_database, ctx.config.threads, ctx.log_file
    )


ITEM_PREPARE_STAGES: Tuple[Stage, ...] = (
    Stage(
        name="normalize",
        output=lambda ctx: ctx.paths.converted_fastq,
        is_complete=file_exists(lambda ctx: ctx.paths.converted_fastq),
        execute=_normalize,
        applies=lambda ctx: ctx.item.kind == InputKind.CONVERTED,
    ),
    Stage(
        name="filter",
        output=lambda ctx: ctx.paths.filtered_fastq,
        is_complete=file_exists(lambda ctx: ctx.paths.filtered_fastq),
        execute=_filter,
        input_from="normalize",
        requires=("normalize",),
    ),
    Stage(
        name="size_estimate",
        output=lambda ctx: ctx.paths.genome_size_file,
        is_complete=file_exists(lambda ctx: ctx.paths.genome_size_file),
        execute=_size_estimate,
        input_from="filter",
        requires=("filter",),
    ),
    Stage(
        name="subsample",
        output=lambda ctx: ctx.paths.subsampled_dir,
        is_complete=glob_count_at_least(
            lambda ctx: ctx.paths.subsampled_dir,
            SUBSAMPLE_GLOB,
            lambda ctx: ctx.config.subsample_count,
        ),
        execute=_subsample,
        input_from="filter",
        requires=("filter",),
    ),
    Stage(
        name="assemble",
        output=lambda ctx: ctx.paths.assemblies_dir,
        is_complete=_assemblies_complete,
        execute=_assemble,
        input_from="subsample",
        requires=("subsample",),
    ),
    Stage(
        name="compress",
        output=lambda ctx: ctx.paths.autocycler_dir,
        is_complete=dir_nonempty(lambda ctx: ctx.paths.autocycler_dir),
        execute=_compress,
        input_from="assemble",
        requires=("assemble",),
    ),
    Stage(
        name="cluster",
        output=lambda ctx: ctx.paths.clustering_dir,
        is_complete=dir_nonempty(lambda ctx: ctx.paths.clustering_dir),
        execute=_cluster,
        input_from="compress",
        requires=("compress",),
    ),
)

CLUSTER_STAGES: Tuple[Stage, ...] = (
    Stage(
        name="trim",
        output=lambda ctx: ctx.cluster_dir,
        is_complete=glob_exists(lambda ctx: ctx.cluster_dir, TRIM_GLOB),
        execute=_trim,
    ),
    Stage(
        name="resolve",
        output=lambda ctx: ctx.cluster_dir / RESOLVED_GFA,
        is_complete=file_exists(lambda ctx: ctx.cluster_dir / RESOLVED_GFA),
        execute=_resolve,
        input_from="trim",
        requires=("trim",),
    ),
)

ITEM_FINISH_STAGES: Tuple[Stage, ...] = (
    Stage(
        name="combine",
        output=lambda ctx: ctx.paths.consensus_fasta,
        is_complete=file_exists(lambda ctx: ctx.paths.consensus_fasta),
        execute=_combine,
        input_from="cluster",
        requires=("cluster",),
    ),
    Stage(
        name="polish",
        output=lambda ctx: ctx.paths.polished_fasta,
        is_complete=file_exists(lambda ctx: ctx.paths.polished_fasta),
        execute=_polish,
        input_from="combine",
        requires=("filter",),
        optional=True,
    ),
    Stage(
        name="finalize",
        output=lambda ctx: ctx.paths.final_fasta,
        is_complete=file_exists(lambda ctx: ctx.paths.final_fasta),
        execute=_finalize,
        input_from="polish",
    ),
)

QUALITY_STAGE = Stage(
    name="quality",
    output=lambda ctx: _quality_report_path(ctx.config.out_dir),
    is_complete=file_exists(lambda ctx: _quality_report_path(ctx.config.out_dir)),
    execute=_quality,
    applies=lambda ctx: ctx.config.checkm2_database is not None,
)

STAGES_BY_NAME: Dict[str, Stage] = {
    stage.name: stage
    for stage in chain(
        ITEM_PREPARE_STAGES, CLUSTER_STAGES, ITEM_FINISH_STAGES, (QUALITY_STAGE,)
    )
}
