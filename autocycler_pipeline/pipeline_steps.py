import logging
import shlex
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence

from Bio import SeqIO

from .errors import EstimationFailed, UpstreamArtifactMissing
from .io_helpers import PathLike, _dir_nonempty
from .read_type import ReadType

logger = logging.getLogger(__name__)

# Top-level stage directories, created under the run's output directory
FILTERED_DIR = "00_filtered_reads"
SUBSAMPLED_DIR = "01_subsampled_reads"
ASSEMBLIES_DIR = "02_assemblies"
AUTOCYCLER_DIR = "03_autocycler_out"
POLISH_DIR = "04_racon_polish"
FINAL_DIR = "05_final_consensus"
STAGE_DIRS = (
    FILTERED_DIR,
    SUBSAMPLED_DIR,
    ASSEMBLIES_DIR,
    AUTOCYCLER_DIR,
    POLISH_DIR,
    FINAL_DIR,
)

# File names used across functions
CONVERTED_SUFFIX = "_converted.fastq"
FILTERED_SUFFIX = "_trimmed.fastq"
GENOME_SIZE_SUFFIX = "_genome_size.txt"
SUBSAMPLE_GLOB = "sample_*.fastq"
CLUSTERING_DIR = "clustering"
QC_PASS_DIR = "qc_pass"
CLUSTER_GLOB = "cluster_*"
TRIM_GLOB = "2_trim*"
RESOLVED_GFA = "5_final.gfa"
CONSENSUS_FASTA = "consensus_assembly.fasta"
ALIGNMENT_SAM = "reads_to_assembly.sam"
POLISHED_FASTA = "genome.racon.fasta"
QUALITY_REPORT_DIR = "checkM2report"
QUALITY_REPORT = "quality_report.tsv"
QUALITY_LOG = "checkm2_log.txt"
LOG_FILE = "log.txt"
RUN_CONFIG_FILE = "run_config.yaml"
RUN_SUMMARY_FILE = "run_summary.json"


@dataclass(frozen=True)
class ItemPaths:
    """Every path the pipeline reads or writes for one sample."""

    out_dir: Path
    item_id: str

    @property
    def filtered_dir(self) -> Path:
        return self.out_dir / FILTERED_DIR / self.item_id

    @property
    def converted_fastq(self) -> Path:
        return self.filtered_dir / f"{self.item_id}{CONVERTED_SUFFIX}"

    @property
    def filtered_fastq(self) -> Path:
        return self.filtered_dir / f"{self.item_id}{FILTERED_SUFFIX}"

    @property
    def genome_size_file(self) -> Path:
        return self.filtered_dir / f"{self.item_id}{GENOME_SIZE_SUFFIX}"

    @property
    def log_file(self) -> Path:
        return self.filtered_dir / LOG_FILE

    @property
    def subsampled_dir(self) -> Path:
        return self.out_dir / SUBSAMPLED_DIR / self.item_id

    @property
    def assemblies_dir(self) -> Path:
        return self.out_dir / ASSEMBLIES_DIR / self.item_id

    @property
    def autocycler_dir(self) -> Path:
        return self.out_dir / AUTOCYCLER_DIR / self.item_id

    @property
    def clustering_dir(self) -> Path:
        return self.autocycler_dir / CLUSTERING_DIR

    @property
    def qc_pass_dir(self) -> Path:
        return self.clustering_dir / QC_PASS_DIR

    @property
    def consensus_fasta(self) -> Path:
        return self.autocycler_dir / CONSENSUS_FASTA

    @property
    def polish_dir(self) -> Path:
        return self.out_dir / POLISH_DIR / self.item_id

    @property
    def polished_fasta(self) -> Path:
        return self.polish_dir / POLISHED_FASTA

    @property
    def final_fasta(self) -> Path:
        return self.out_dir / FINAL_DIR / f"{self.item_id}.fasta"


def _final_dir(out_dir: PathLike) -> Path:
    return Path(out_dir) / FINAL_DIR


def _quality_report_path(out_dir: PathLike) -> Path:
    return _final_dir(out_dir) / QUALITY_REPORT_DIR / QUALITY_REPORT


def _create_stage_dirs(out_dir: PathLike) -> None:
    out_dir = Path(out_dir)
    for name in STAGE_DIRS:
        (out_dir / name).mkdir(parents=True, exist_ok=True)


class FastaStats(NamedTuple):
    count: int
    longest: int
    total: int


def _run_tool(
    cmd: Sequence[str], log_path: PathLike, stdout_path: Optional[PathLike] = None
) -> None:
    """Run one external tool, appending its diagnostics to log_path.

    When stdout_path is given the tool's stdout is written to a .tmp sibling that is
    renamed into place only after a zero exit, so a failed or interrupted run never
    leaves a file that looks like finished output.

    Raises:
        subprocess.CalledProcessError: If the tool exits non-zero
        OSError: If the executable cannot be started
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Running: {shlex.join(cmd)}")
    with open(log_path, "a") as log:
        log.write(f"$ {shlex.join(cmd)}\n")
        log.flush()
        if stdout_path is None:
            subprocess.run(cmd, stdout=log, stderr=log, check=True)
            return

        stdout_path = Path(stdout_path)
        tmp_path = stdout_path.with_name(stdout_path.name + ".tmp")
        try:
            with open(tmp_path, "w") as out:
                subprocess.run(cmd, stdout=out, stderr=log, check=True)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        tmp_path.replace(stdout_path)


def _capture_tool(cmd: Sequence[str], log_path: PathLike) -> str:
    """Run one external tool and return its stdout; stderr goes to log_path."""
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Running: {shlex.join(cmd)}")
    with open(log_path, "a") as log:
        log.write(f"$ {shlex.join(cmd)}\n")
        log.flush()
        result = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=log, text=True, check=True
        )
    return result.stdout


def _convert_bam(bam_path: Path, out_fastq: Path, threads: int, log_path: Path) -> Path:
    """Convert an unaligned BAM into FASTQ with samtools."""
    out_fastq.parent.mkdir(parents=True, exist_ok=True)
    _run_tool(
        ["samtools", "fastq", "-@", str(threads), str(bam_path)],
        log_path,
        stdout_path=out_fastq,
    )
    return out_fastq


def _filter_reads(
    reads: Path, out_fastq: Path, min_length: int, keep_percent: int, log_path: Path
) -> Path:
    """Drop short and low quality reads with filtlong."""
    out_fastq.parent.mkdir(parents=True, exist_ok=True)
    # fmt: off
    cmd = [
        "filtlong",
        "--min_length", str(min_length),
        "--keep_percent", str(keep_percent),
        str(reads),
    ]
    # fmt: on
    _run_tool(cmd, log_path, stdout_path=out_fastq)
    return out_fastq


def _estimate_genome_size(reads: Path, threads: int, log_path: Path) -> int:
    """Estimate genome size from reads with `autocycler helper genome_size`.

    Raises:
        EstimationFailed: If the helper fails or prints something other than a
            positive integer
    """
    # fmt: off
    cmd = [
        "autocycler", "helper", "genome_size",
        "--reads", str(reads),
        "--threads", str(threads),
    ]
    # fmt: on
    try:
        output = _capture_tool(cmd, log_path)
    except (subprocess.CalledProcessError, OSError) as e:
        raise EstimationFailed(f"genome size helper failed: {e}") from e

    output = output.strip()
    if not output:
        raise EstimationFailed("genome size helper produced no output")
    try:
        genome_size = int(output.split()[-1])
    except ValueError as e:
        raise EstimationFailed(f"could not parse genome size from {output!r}") from e
    if genome_size < 1:
        raise EstimationFailed(f"genome size helper reported {genome_size}")
    return genome_size


def _read_cached_genome_size(path: Path) -> int:
    text = path.read_text().strip()
    try:
        genome_size = int(text)
    except ValueError as e:
        raise EstimationFailed(f"cached genome size in {path} is not an integer: {text!r}") from e
    if genome_size < 1:
        raise EstimationFailed(f"cached genome size in {path} is {genome_size}")
    return genome_size


def _write_cached_genome_size(path: Path, genome_size: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(f"{genome_size}\n")
    tmp_path.replace(path)


def _subsample_paths(subsampled_dir: Path, count: int) -> List[Path]:
    """Paths of the read subsets autocycler subsample writes: sample_01.fastq, ..."""
    return [subsampled_dir / f"sample_{i:02d}.fastq" for i in range(1, count + 1)]


def _subsample_reads(
    reads: Path, out_dir: Path, genome_size: int, count: int, log_path: Path
) -> Path:
    """Split filtered reads into `count` subsets with autocycler subsample."""
    # fmt: off
    cmd = [
        "autocycler", "subsample",
        "--reads", str(reads),
        "--out_dir", str(out_dir),
        "--genome_size", str(genome_size),
        "--count", str(count),
    ]
    # fmt: on
    _run_tool(cmd, log_path)
    return out_dir


def _assembly_prefix(assemblies_dir: Path, assembler: str, subsample_num: int) -> Path:
    return assemblies_dir / f"{assembler}_{subsample_num:02d}"


def _assemble_subsamples(
    subsampled_dir: Path,
    assemblies_dir: Path,
    assemblers: Sequence[str],
    count: int,
    read_type: ReadType,
    threads: int,
    genome_size: int,
    log_path: Path,
    num_parallel: int = 1,
) -> Path:
    """Assemble every subsample with every assembler via `autocycler helper`.

    Each (assembler, subsample) pair writes to its own prefix
    assemblies_dir/<assembler>_<NN>, so jobs are independent and may run in
    parallel.

    Args:
        subsampled_dir: Directory holding sample_NN.fastq files
        assemblies_dir: Output directory for all assemblies of this sample
        assemblers: Assembler names understood by autocycler helper
        count: Number of subsamples
        read_type: Sequencing technology
        threads: Threads per assembler invocation
        genome_size: Expected genome size
        log_path: Log file receiving assembler output
        num_parallel: Assembler invocations run at once
    """
    assemblies_dir.mkdir(parents=True, exist_ok=True)
    cmds = []
    for assembler in assemblers:
        for subsample_num, reads in enumerate(_subsample_paths(subsampled_dir, count), 1):
            # fmt: off
            cmd = [
                "autocycler", "helper", assembler,
                "--reads", str(reads),
                "--out_prefix", str(_assembly_prefix(assemblies_dir, assembler, subsample_num)),
                "--read_type", read_type.value,
                "--threads", str(threads),
                "--genome_size", str(genome_size),
            ]
            # fmt: on
            cmds.append(cmd)

    if num_parallel <= 1:
        for cmd in cmds:
            _run_tool(cmd, log_path)
        return assemblies_dir

    with ThreadPoolExecutor(max_workers=num_parallel) as executor:
        futures = [executor.submit(_run_tool, cmd, log_path) for cmd in cmds]
        for future in as_completed(futures):
            future.result()  # Raises exception if command failed
    return assemblies_dir


def _compress_assemblies(assemblies_dir: Path, autocycler_dir: Path, log_path: Path) -> Path:
    _run_tool(
        ["autocycler", "compress", "-i", str(assemblies_dir), "-a", str(autocycler_dir)],
        log_path,
    )
    return autocycler_dir


def _cluster_contigs(autocycler_dir: Path, log_path: Path) -> Path:
    _run_tool(["autocycler", "cluster", "-a", str(autocycler_dir)], log_path)
    return autocycler_dir / CLUSTERING_DIR


def _discover_clusters(qc_pass_dir: Path) -> List[Path]:
    """List the QC-passing cluster directories written by autocycler cluster."""
    if not qc_pass_dir.is_dir():
        return []
    return sorted(d for d in qc_pass_dir.glob(CLUSTER_GLOB) if d.is_dir())


def _trim_cluster(cluster_dir: Path, log_path: Path) -> Path:
    _run_tool(["autocycler", "trim", "-c", str(cluster_dir)], log_path)
    return cluster_dir


def _resolve_cluster(cluster_dir: Path, log_path: Path) -> Path:
    _run_tool(["autocycler", "resolve", "-c", str(cluster_dir)], log_path)
    return cluster_dir / RESOLVED_GFA


def _combine_clusters(autocycler_dir: Path, qc_pass_dir: Path, log_path: Path) -> Path:
    """Merge every resolved cluster graph into consensus_assembly.fasta.

    Raises:
        UpstreamArtifactMissing: If clustering produced no QC-passing cluster with a
            resolved graph
    """
    if not _dir_nonempty(qc_pass_dir):
        raise UpstreamArtifactMissing(
            qc_pass_dir, f"no QC-passing clusters in {qc_pass_dir}"
        )
    graphs = [
        cluster / RESOLVED_GFA
        for cluster in _discover_clusters(qc_pass_dir)
        if (cluster / RESOLVED_GFA).is_file()
    ]
    if not graphs:
        raise UpstreamArtifactMissing(
            qc_pass_dir, f"no resolved cluster graphs ({RESOLVED_GFA}) in {qc_pass_dir}"
        )
    cmd = ["autocycler", "combine", "-a", str(autocycler_dir), "-i"]
    cmd.extend(str(g) for g in graphs)
    _run_tool(cmd, log_path)
    return autocycler_dir / CONSENSUS_FASTA


def _polish_consensus(
    consensus: Path,
    reads: Path,
    polish_dir: Path,
    read_type: ReadType,
    threads: int,
    log_path: Path,
) -> Path:
    """Polish the consensus with one round of minimap2 + Racon.

    The intermediate SAM alignment is removed whether or not polishing succeeds.

    Raises:
        UpstreamArtifactMissing: If the consensus assembly does not exist
    """
    if not consensus.is_file():
        raise UpstreamArtifactMissing(
            consensus, f"consensus assembly not found at {consensus}"
        )
    polish_dir.mkdir(parents=True, exist_ok=True)
    alignment = polish_dir / ALIGNMENT_SAM
    polished = polish_dir / POLISHED_FASTA
    try:
        # fmt: off
        _run_tool(
            [
                "minimap2",
                "-ax", read_type.minimap2_preset,
                "-t", str(threads),
                str(consensus), str(reads),
            ],
            log_path,
            stdout_path=alignment,
        )
        _run_tool(
            ["racon", "-t", str(threads), str(reads), str(alignment), str(consensus)],
            log_path,
            stdout_path=polished,
        )
        # fmt: on
    finally:
        alignment.unlink(missing_ok=True)
    return polished


def _copy_final_assembly(polished: Path, consensus: Path, dest: Path) -> Path:
    """Copy the best available assembly to dest: polished if present, else consensus.

    Raises:
        UpstreamArtifactMissing: If neither assembly exists
    """
    if polished.is_file():
        source = polished
    elif consensus.is_file():
        logger.warning(
            f"Polished assembly not found at {polished}; "
            f"copying unpolished consensus as fallback"
        )
        source = consensus
    else:
        raise UpstreamArtifactMissing(
            consensus, "no assembly found to copy to final destination"
        )
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(dest.name + ".tmp")
    shutil.copy2(source, tmp_path)
    tmp_path.replace(dest)
    return dest


def _assess_quality(
    final_dir: Path, database: Path, threads: int, log_path: Path
) -> Path:
    """Score every final assembly with CheckM2.

    Raises:
        UpstreamArtifactMissing: If final_dir holds no assemblies
    """
    if not any(final_dir.glob("*.fasta")):
        raise UpstreamArtifactMissing(final_dir, f"no final assemblies in {final_dir}")
    report_dir = final_dir / QUALITY_REPORT_DIR
    # fmt: off
    cmd = [
        "checkm2", "predict",
        "--database_path", str(database),
        "--input", str(final_dir),
        "--output-directory", str(report_dir),
        "--threads", str(threads),
        "-x", "fasta",
        "--force",
    ]
    # fmt: on
    _run_tool(cmd, log_path)
    return report_dir / QUALITY_REPORT


def _fasta_stats(path: PathLike) -> FastaStats:
    """Get contig count, longest and total length of sequences in a fasta file.

    Args:
        path: Path to fasta file

    Returns:
        Named tuple with count, longest and total; all zero if the file is missing
    """
    path = Path(path)
    if not path.is_file():
        return FastaStats(0, 0, 0)

    lengths = [len(rec.seq) for rec in SeqIO.parse(path, "fasta")]
    if lengths:
        return FastaStats(len(lengths), max(lengths), sum(lengths))
    return FastaStats(0, 0, 0)
