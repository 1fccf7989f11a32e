import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from autocycler_pipeline import pipeline_steps
from autocycler_pipeline.run_config import RunConfig


def _arg(cmd: List[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


def _tool_key(cmd: List[str]) -> str:
    """Name a command by its tool, e.g. autocycler helper flye or filtlong."""
    if cmd[0] == "autocycler":
        if cmd[1] == "helper":
            return f"autocycler helper {cmd[2]}"
        return f"autocycler {cmd[1]}"
    if cmd[0] == "checkm2":
        return "checkm2"
    return cmd[0]


class FakeTools:
    """Stands in for every external tool, creating the files each one would write.

    Attributes:
        calls: Every command run, in order
        genome_size_output: stdout of `autocycler helper genome_size`
        clusters: Number of QC-passing clusters written by `autocycler cluster`,
            overridable per sample through clusters_by_sample
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.genome_size_output = "4200000\n"
        self.clusters = 2
        self.clusters_by_sample: Dict[str, int] = {}
        self._failures: List[tuple] = []
        self._silent: List[str] = []

    def fail(self, tool: str, sample: Optional[str] = None, times: Optional[int] = None):
        """Make `tool` exit non-zero, optionally only when `sample` appears in its
        arguments and only for the first `times` calls."""
        self._failures.append([tool, sample, times])

    def produce_nothing(self, tool: str):
        """Make `tool` exit zero without writing anything."""
        self._silent.append(tool)

    def calls_for(self, tool: str, sample: Optional[str] = None) -> List[List[str]]:
        return [
            cmd
            for cmd in self.calls
            if _tool_key(cmd) == tool and (sample is None or f"/{sample}" in " ".join(cmd))
        ]

    def _maybe_fail(self, cmd: List[str]) -> None:
        key = _tool_key(cmd)
        for failure in self._failures:
            tool, sample, times = failure
            if tool != key or (sample is not None and f"/{sample}" not in " ".join(cmd)):
                continue
            if times is not None:
                if times <= 0:
                    continue
                failure[2] = times - 1
            raise subprocess.CalledProcessError(1, cmd)

    def run_tool(self, cmd, log_path, stdout_path=None) -> None:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self._maybe_fail(cmd)
        key = _tool_key(cmd)
        if key in self._silent:
            return

        if stdout_path is not None:
            Path(stdout_path).write_text(self._stdout_for(key))
            return

        if key == "autocycler subsample":
            out_dir = Path(_arg(cmd, "--out_dir"))
            out_dir.mkdir(parents=True, exist_ok=True)
            for i in range(1, int(_arg(cmd, "--count")) + 1):
                (out_dir / f"sample_{i:02d}.fastq").write_text("@r\nACGT\n+\nIIII\n")
        elif key.startswith("autocycler helper"):
            prefix = Path(_arg(cmd, "--out_prefix"))
            prefix.with_suffix(".fasta").write_text(">c1\nACGTACGT\n")
        elif key == "autocycler compress":
            out_dir = Path(_arg(cmd, "-a"))
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / "input_assemblies.gfa").write_text("H\tVN:Z:1.0\n")
        elif key == "autocycler cluster":
            clustering = Path(_arg(cmd, "-a")) / "clustering"
            sample = clustering.parent.name
            passing = self.clusters_by_sample.get(sample, self.clusters)
            (clustering / "qc_fail" / "cluster_900").mkdir(parents=True, exist_ok=True)
            for i in range(1, passing + 1):
                cluster = clustering / "qc_pass" / f"cluster_{i:03d}"
                cluster.mkdir(parents=True, exist_ok=True)
                (cluster / "1_untrimmed.gfa").write_text("H\tVN:Z:1.0\n")
        elif key == "autocycler trim":
            (Path(_arg(cmd, "-c")) / "2_trimmed.gfa").write_text("H\tVN:Z:1.0\n")
        elif key == "autocycler resolve":
            (Path(_arg(cmd, "-c")) / "5_final.gfa").write_text("H\tVN:Z:1.0\n")
        elif key == "autocycler combine":
            (Path(_arg(cmd, "-a")) / "consensus_assembly.fasta").write_text(
                ">consensus_1\nACGTACGTACGT\n>consensus_2\nACGT\n"
            )
        elif key == "checkm2":
            report_dir = Path(_arg(cmd, "--output-directory"))
            report_dir.mkdir(parents=True, exist_ok=True)
            (report_dir / "quality_report.tsv").write_text("Name\tCompleteness\n")
        else:
            raise AssertionError(f"Unexpected command {cmd}")

    @staticmethod
    def _stdout_for(key: str) -> str:
        if key == "racon":
            return ">consensus_1 polished\nACGTACGTACGTAA\n"
        if key == "minimap2":
            return "@HD\tVN:1.6\n"
        # samtools fastq, filtlong
        return "@r\nACGTACGT\n+\nIIIIIIII\n"

    def capture_tool(self, cmd, log_path) -> str:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self._maybe_fail(cmd)
        return self.genome_size_output


@pytest.fixture
def fake_tools(monkeypatch) -> FakeTools:
    tools = FakeTools()
    monkeypatch.setattr(pipeline_steps, "_run_tool", tools.run_tool)
    monkeypatch.setattr(pipeline_steps, "_capture_tool", tools.capture_tool)
    return tools


@pytest.fixture
def reads_dir(tmp_path) -> Path:
    """Reads directory holding one FASTQ sample and one BAM sample."""
    reads = tmp_path / "reads"
    reads.mkdir()
    (reads / "sample1.fastq.gz").write_bytes(b"fake gzip")
    (reads / "sample2.bam").write_bytes(b"fake bam")
    return reads


@pytest.fixture
def run_config(tmp_path, reads_dir) -> RunConfig:
    return RunConfig(
        reads_dir=reads_dir,
        out_dir=tmp_path / "out",
        threads=2,
        assemblers=("flye", "raven"),
        subsample_count=2,
        checkm2_database=tmp_path / "uniref100.KO.1.dmnd",
        check_tools=False,
    )
