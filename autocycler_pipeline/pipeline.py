import json
import logging
import shlex
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypedDict

from .errors import (
    DependencyUnsatisfied,
    StageFailed,
    ToolNotFound,
    UpstreamArtifactMissing,
)
from .io_helpers import InputKind, WorkItem, discover_work_items
from .pipeline_steps import (
    RUN_CONFIG_FILE,
    RUN_SUMMARY_FILE,
    _create_stage_dirs,
    _discover_clusters,
    _fasta_stats,
    _quality_report_path,
)
from .run_config import RunConfig
from .stages import (
    CLUSTER_STAGES,
    ITEM_FINISH_STAGES,
    ITEM_PREPARE_STAGES,
    QUALITY_STAGE,
    STAGES_BY_NAME,
    ClusterContext,
    RunContext,
    Stage,
    StageContext,
)

logger = logging.getLogger(__name__)

BASE_TOOLS = ("filtlong", "autocycler", "minimap2", "racon")


class StageRecord(TypedDict):
    stages_run: List[str]
    stages_skipped: List[str]
    warnings: List[str]


class ItemSummary(StageRecord):
    """
    Outcome of one sample. status is "completed" when a final assembly exists,
    "incomplete" when the run finished without one (warnings explain why) and
    "failed" when a tool failure or unmet dependency stopped the sample.
    """

    item_id: str
    input_path: str
    status: str
    phase: str
    clusters: int
    error: Optional[str]
    final_assembly: Optional[str]
    contig_count: int
    longest_contig_length: int
    total_contig_length: int


class RunSummary(TypedDict):
    total_time: float
    out_dir: str
    items: List[ItemSummary]
    failed_items: List[str]
    incomplete_items: List[str]
    quality_report: Optional[str]
    quality_error: Optional[str]
    quality_warnings: List[str]


class DriverPhase(str, Enum):
    """Phases of the per-sample driver, visited in declaration order."""

    PREPARE = "prepare"
    CLUSTERS = "clusters"
    FINISH = "finish"
    DONE = "done"


def _format_cmd(cmd) -> str:
    if isinstance(cmd, (list, tuple)):
        return shlex.join(str(c) for c in cmd)
    return str(cmd)


def _record_entry(stage: Stage, ctx) -> str:
    if isinstance(ctx, ClusterContext):
        return f"{stage.name}/{ctx.cluster_dir.name}"
    return stage.name


def _upstream(stage: Stage, ctx) -> Optional[Path]:
    if stage.input_from is None:
        return ctx.source
    return ctx.outputs.get(stage.input_from)


def _dependency_satisfied(name: str, ctx, registry: Dict[str, Stage]) -> bool:
    dependency = registry[name]
    return not dependency.applies(ctx) or dependency.is_complete(ctx)


def _execute(stage: Stage, ctx, upstream: Optional[Path]) -> Path:
    """Run a stage's executor, retrying tool failures up to max_retries times and
    converting them into StageFailed."""
    attempts = ctx.config.max_retries + 1
    attempt = 1
    while True:
        try:
            return stage.execute(ctx, upstream)
        except subprocess.CalledProcessError as e:
            reason = f"`{_format_cmd(e.cmd)}` exited with status {e.returncode}"
            if attempt >= attempts:
                raise StageFailed(stage.name, ctx.label, reason) from e
            logger.warning(
                f"{ctx.label}: {stage.name} attempt {attempt}/{attempts} failed: "
                f"{reason}; retrying"
            )
            attempt += 1
        except OSError as e:
            raise StageFailed(stage.name, ctx.label, str(e)) from e


def drive_stages(
    stages: Sequence[Stage],
    ctx,
    record: StageRecord,
    registry: Dict[str, Stage] = STAGES_BY_NAME,
) -> None:
    """Walk an ordered stage table for one context.

    Every stage whose completion predicate already holds is skipped. Otherwise its
    declared dependencies are checked and its executor is called with the output of
    its input_from stage. A missing upstream artifact downgrades the stage to a
    warning; a tool failure propagates as StageFailed unless the stage is optional.

    Raises:
        DependencyUnsatisfied: If a required stage has not produced its output
        StageFailed: If a non-optional stage's tool fails
    """
    for stage in stages:
        if not stage.applies(ctx):
            ctx.outputs[stage.name] = _upstream(stage, ctx)
            continue

        entry = _record_entry(stage, ctx)
        if stage.is_complete(ctx):
            logger.info(f"{ctx.label}: existing {stage.name} output detected; skipping")
            ctx.outputs[stage.name] = stage.output(ctx)
            record["stages_skipped"].append(entry)
            continue

        for name in stage.requires:
            if not _dependency_satisfied(name, ctx, registry):
                raise DependencyUnsatisfied(stage.name, ctx.label, name)

        logger.info(f"{ctx.label}: running {stage.name}")
        try:
            ctx.outputs[stage.name] = _execute(stage, ctx, _upstream(stage, ctx))
        except UpstreamArtifactMissing as e:
            logger.warning(f"{ctx.label}: skipping {stage.name}: {e}")
            record["warnings"].append(f"{entry}: {e}")
            continue
        except StageFailed as e:
            if not stage.optional:
                raise
            logger.warning(f"{e}; continuing without {stage.name} output")
            record["warnings"].append(str(e))
            continue
        record["stages_run"].append(entry)


def _run_parallel(fn: Callable, args: Sequence, num_parallel: int) -> List[Any]:
    """Apply fn to every argument, using a thread pool when num_parallel > 1.
    Results are returned in argument order; the first exception propagates."""
    if num_parallel <= 1 or len(args) <= 1:
        return [fn(arg) for arg in args]

    with ThreadPoolExecutor(max_workers=num_parallel) as executor:
        futures = [executor.submit(fn, arg) for arg in args]
        for future in as_completed(futures):
            future.result()  # Raises exception if the call failed
        return [future.result() for future in futures]


def _new_item_summary(item: WorkItem) -> ItemSummary:
    return {
        "item_id": item.item_id,
        "input_path": str(item.path),
        "status": "incomplete",
        "phase": DriverPhase.PREPARE.value,
        "stages_run": [],
        "stages_skipped": [],
        "warnings": [],
        "clusters": 0,
        "error": None,
        "final_assembly": None,
        "contig_count": 0,
        "longest_contig_length": 0,
        "total_contig_length": 0,
    }


class ItemDriver:
    """Carries one sample through the pipeline.

    The driver moves through three phases: PREPARE runs the item-level stages up to
    clustering, CLUSTERS discovers the QC-passing clusters that clustering produced
    and runs trim/resolve for each, FINISH runs combine, polish and finalize.
    """

    def __init__(self, item: WorkItem, config: RunConfig):
        self.ctx = StageContext(config, item)
        self.phase = DriverPhase.PREPARE
        self.clusters: List[Path] = []
        self.record = _new_item_summary(item)

    @property
    def label(self) -> str:
        return self.ctx.label

    def run(self) -> ItemSummary:
        logger.info("=" * 65)
        logger.info(f"Starting pipeline for: {self.ctx.item.path}")
        logger.info("=" * 65)
        try:
            while self.phase is not DriverPhase.DONE:
                self.record["phase"] = self.phase.value
                self.phase = self._PHASES[self.phase](self)
        except (StageFailed, DependencyUnsatisfied) as e:
            logger.error(f"{e}; abandoning remaining stages for {self.label}")
            self.record["status"] = "failed"
            self.record["error"] = str(e)
            return self.record

        self.record["phase"] = DriverPhase.DONE.value
        self._record_final_assembly()
        logger.info(f"--- Finished pipeline for {self.ctx.item.path} ---")
        return self.record

    def _prepare(self) -> DriverPhase:
        drive_stages(ITEM_PREPARE_STAGES, self.ctx, self.record)
        return DriverPhase.CLUSTERS

    def _run_clusters(self) -> DriverPhase:
        qc_pass_dir = self.ctx.paths.qc_pass_dir
        self.clusters = _discover_clusters(qc_pass_dir)
        self.record["clusters"] = len(self.clusters)
        if not self.clusters:
            logger.warning(
                f"{self.label}: no QC-passing clusters in {qc_pass_dir}; "
                f"skipping trim and resolve"
            )
            return DriverPhase.FINISH

        logger.info(f"{self.label}: trimming and resolving {len(self.clusters)} clusters")
        _run_parallel(
            self._drive_cluster, self.clusters, self.ctx.config.parallel_clusters
        )
        return DriverPhase.FINISH

    def _drive_cluster(self, cluster_dir: Path) -> None:
        drive_stages(CLUSTER_STAGES, ClusterContext(self.ctx, cluster_dir), self.record)

    def _finish(self) -> DriverPhase:
        drive_stages(ITEM_FINISH_STAGES, self.ctx, self.record)
        return DriverPhase.DONE

    _PHASES = {
        DriverPhase.PREPARE: _prepare,
        DriverPhase.CLUSTERS: _run_clusters,
        DriverPhase.FINISH: _finish,
    }

    def _record_final_assembly(self) -> None:
        final_fasta = self.ctx.paths.final_fasta
        if not final_fasta.is_file():
            self.record["status"] = "incomplete"
            return
        self.record.update(status="completed", final_assembly=str(final_fasta))
        try:
            stats = _fasta_stats(final_fasta)
        except (ValueError, OSError) as e:
            logger.warning(f"{self.label}: could not read statistics from {final_fasta}: {e}")
            self.record["warnings"].append(f"statistics: {e}")
            return
        self.record.update(
            contig_count=stats.count,
            longest_contig_length=stats.longest,
            total_contig_length=stats.total,
        )


def required_tools(config: RunConfig, items: Iterable[WorkItem]) -> List[str]:
    """Executables this run will invoke."""
    tools = list(BASE_TOOLS)
    if any(item.kind == InputKind.CONVERTED for item in items):
        tools.append("samtools")
    if config.checkm2_database is not None:
        tools.append("checkm2")
    return tools


def check_required_tools(tools: Iterable[str]) -> None:
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ToolNotFound(f"Required tools not found in PATH: {', '.join(missing)}")


def _assess_quality_once(config: RunConfig) -> tuple:
    """Run the run-level quality stage. Returns (report path, error, warnings)."""
    if not QUALITY_STAGE.applies(RunContext(config)):
        logger.info("No CheckM2 database configured; skipping quality assessment")
        return None, None, []

    logger.info("Assessing assembly quality with CheckM2")
    record: StageRecord = {"stages_run": [], "stages_skipped": [], "warnings": []}
    try:
        drive_stages((QUALITY_STAGE,), RunContext(config), record)
    except StageFailed as e:
        logger.error(str(e))
        return None, str(e), record["warnings"]

    report = _quality_report_path(config.out_dir)
    return (str(report) if report.is_file() else None), None, record["warnings"]


def run_pipeline(config: RunConfig) -> RunSummary:
    """Run every sample in config.reads_dir through the pipeline, then assess quality.

    Samples are isolated from each other: a failure in one is recorded in the summary
    and the remaining samples still run. The summary is also written to
    <out_dir>/run_summary.json.

    Args:
        config: Run configuration

    Returns:
        RunSummary: Per-sample outcomes and the quality report location

    Raises:
        ValueError: If the reads directory does not exist
        NoInputFound: If the reads directory holds no read files
        ToolNotFound: If config.check_tools is set and a required tool is missing
    """
    start_time = time.time()
    items = discover_work_items(config.reads_dir)
    logger.info(f"Found {len(items)} read files in {config.reads_dir}")
    if config.check_tools:
        check_required_tools(required_tools(config, items))

    out_dir = Path(config.out_dir)
    logger.info("Creating main output directories")
    _create_stage_dirs(out_dir)
    config.write_config(out_dir / RUN_CONFIG_FILE)

    item_summaries = _run_parallel(
        lambda item: ItemDriver(item, config).run(), items, config.parallel_items
    )

    quality_report, quality_error, quality_warnings = _assess_quality_once(config)

    summary: RunSummary = {
        "total_time": time.time() - start_time,
        "out_dir": str(out_dir),
        "items": item_summaries,
        "failed_items": [s["item_id"] for s in item_summaries if s["status"] == "failed"],
        "incomplete_items": [
            s["item_id"] for s in item_summaries if s["status"] == "incomplete"
        ],
        "quality_report": quality_report,
        "quality_error": quality_error,
        "quality_warnings": quality_warnings,
    }
    with open(out_dir / RUN_SUMMARY_FILE, "w") as f:
        json.dump(summary, f, indent=2)

    logger.info("=" * 65)
    logger.info("All files have been processed.")
    if summary["failed_items"]:
        logger.error(f"Failed samples: {', '.join(summary['failed_items'])}")
    if summary["incomplete_items"]:
        logger.warning(
            f"Samples without a final assembly: {', '.join(summary['incomplete_items'])}"
        )
    logger.info("=" * 65)
    return summary


def pipeline_status(config: RunConfig) -> Dict[str, Dict[str, Any]]:
    """Evaluate every completion predicate without running anything.

    Returns a mapping of sample id -> stage name -> state, where state is True/False
    for item-level stages, None for stages that do not apply to the sample, and a
    "done/total" string for the per-cluster stages. The run-level quality stage is
    reported under the key "*".
    """
    status: Dict[str, Dict[str, Any]] = {}
    for item in discover_work_items(config.reads_dir):
        ctx = StageContext(config, item)
        stages: Dict[str, Any] = {}
        for stage in ITEM_PREPARE_STAGES:
            stages[stage.name] = stage.is_complete(ctx) if stage.applies(ctx) else None
        clusters = _discover_clusters(ctx.paths.qc_pass_dir)
        for stage in CLUSTER_STAGES:
            done = sum(stage.is_complete(ClusterContext(ctx, c)) for c in clusters)
            stages[stage.name] = f"{done}/{len(clusters)}"
        for stage in ITEM_FINISH_STAGES:
            stages[stage.name] = stage.is_complete(ctx)
        status[item.item_id] = stages

    run_ctx = RunContext(config)
    status["*"] = {
        QUALITY_STAGE.name: (
            QUALITY_STAGE.is_complete(run_ctx) if QUALITY_STAGE.applies(run_ctx) else None
        )
    }
    return status
