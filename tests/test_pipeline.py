import json
from dataclasses import replace

import pytest

from autocycler_pipeline import pipeline as pipeline_module
from autocycler_pipeline.cli import EXIT_ITEM_FAILURES, EXIT_OK, EXIT_SETUP_FAILURE, main
from autocycler_pipeline.errors import NoInputFound, ToolNotFound
from autocycler_pipeline.io_helpers import discover_work_items
from autocycler_pipeline.pipeline import (
    check_required_tools,
    pipeline_status,
    required_tools,
    run_pipeline,
)
from autocycler_pipeline.pipeline_steps import ItemPaths
from autocycler_pipeline.run_config import RunConfig


def _without_database(config):
    return replace(config, checkm2_database=None)


def _items_by_id(summary):
    return {item["item_id"]: item for item in summary["items"]}


@pytest.mark.fast
@pytest.mark.integration
def test_full_run(fake_tools, run_config):
    summary = run_pipeline(run_config)

    out = run_config.out_dir
    for name in (
        "00_filtered_reads",
        "01_subsampled_reads",
        "02_assemblies",
        "03_autocycler_out",
        "04_racon_polish",
        "05_final_consensus",
    ):
        assert (out / name).is_dir()

    items = _items_by_id(summary)
    for sample in ("sample1", "sample2"):
        assert items[sample]["status"] == "completed"
        assert items[sample]["clusters"] == 2
        final = out / "05_final_consensus" / f"{sample}.fasta"
        assert final.read_text().startswith(">consensus_1 polished")
        assert items[sample]["contig_count"] == 1
        assert items[sample]["longest_contig_length"] == 14
        # the intermediate alignment is never kept
        assert not (out / "04_racon_polish" / sample / "reads_to_assembly.sam").exists()

    assert summary["failed_items"] == []
    assert summary["quality_report"] == str(
        out / "05_final_consensus" / "checkM2report" / "quality_report.tsv"
    )
    assert len(fake_tools.calls_for("checkm2")) == 1
    assert json.loads((out / "run_summary.json").read_text())["failed_items"] == []
    assert (out / "run_config.yaml").is_file()


@pytest.mark.fast
@pytest.mark.integration
def test_only_bam_input_is_converted(fake_tools, run_config):
    run_pipeline(run_config)
    (convert,) = fake_tools.calls_for("samtools")
    assert convert[-1].endswith("sample2.bam")

    filtlong_inputs = {cmd[-1] for cmd in fake_tools.calls_for("filtlong")}
    assert filtlong_inputs == {
        str(run_config.reads_dir / "sample1.fastq.gz"),
        str(ItemPaths(run_config.out_dir, "sample2").converted_fastq),
    }


@pytest.mark.fast
@pytest.mark.integration
def test_second_run_invokes_nothing(fake_tools, run_config):
    run_pipeline(run_config)
    first_run_calls = len(fake_tools.calls)
    assert first_run_calls > 0

    summary = run_pipeline(run_config)

    assert len(fake_tools.calls) == first_run_calls
    for item in summary["items"]:
        assert item["stages_run"] == []
        assert item["status"] == "completed"


@pytest.mark.fast
@pytest.mark.integration
def test_existing_output_is_not_recomputed(fake_tools, run_config):
    paths = ItemPaths(run_config.out_dir, "sample1")
    paths.filtered_dir.mkdir(parents=True)
    paths.filtered_fastq.write_text("@kept\nACGT\n+\nIIII\n")

    summary = run_pipeline(run_config)

    assert fake_tools.calls_for("filtlong", "sample1") == []
    assert len(fake_tools.calls_for("filtlong", "sample2")) == 1
    assert paths.filtered_fastq.read_text() == "@kept\nACGT\n+\nIIII\n"
    assert "filter" in _items_by_id(summary)["sample1"]["stages_skipped"]


@pytest.mark.fast
@pytest.mark.integration
def test_genome_size_estimate_is_cached(fake_tools, run_config):
    run_pipeline(run_config)
    paths = ItemPaths(run_config.out_dir, "sample1")
    assert paths.genome_size_file.read_text().strip() == "4200000"
    (subsample,) = fake_tools.calls_for("autocycler subsample", "sample1")
    assert subsample[subsample.index("--genome_size") + 1] == "4200000"


@pytest.mark.fast
@pytest.mark.integration
def test_genome_size_fallback_is_not_cached(fake_tools, run_config):
    fake_tools.genome_size_output = ""

    run_pipeline(run_config)

    paths = ItemPaths(run_config.out_dir, "sample1")
    assert not paths.genome_size_file.exists()
    (subsample,) = fake_tools.calls_for("autocycler subsample", "sample1")
    assert subsample[subsample.index("--genome_size") + 1] == "5000000"
    for cmd in fake_tools.calls_for("autocycler helper flye", "sample1"):
        assert cmd[cmd.index("--genome_size") + 1] == "5000000"

    # the next run tries to estimate again
    fake_tools.genome_size_output = "3900000\n"
    run_pipeline(run_config)
    assert paths.genome_size_file.read_text().strip() == "3900000"


@pytest.mark.fast
@pytest.mark.integration
def test_zero_qc_passing_clusters(fake_tools, run_config, caplog):
    fake_tools.clusters_by_sample["sample2"] = 0

    summary = run_pipeline(run_config)

    assert fake_tools.calls_for("autocycler trim", "sample2") == []
    assert fake_tools.calls_for("autocycler resolve", "sample2") == []
    assert fake_tools.calls_for("autocycler combine", "sample2") == []
    assert fake_tools.calls_for("minimap2", "sample2") == []

    sample2 = _items_by_id(summary)["sample2"]
    assert sample2["status"] == "incomplete"
    assert sample2["clusters"] == 0
    warned = {warning.split(":")[0] for warning in sample2["warnings"]}
    assert warned == {"combine", "polish", "finalize"}
    assert not (run_config.out_dir / "05_final_consensus" / "sample2.fasta").exists()

    # sample1 is unaffected and quality assessment still covers it
    assert _items_by_id(summary)["sample1"]["status"] == "completed"
    assert len(fake_tools.calls_for("checkm2")) == 1
    assert summary["quality_report"] is not None
    assert summary["incomplete_items"] == ["sample2"]
    assert "no QC-passing clusters" in caplog.text


@pytest.mark.fast
@pytest.mark.integration
def test_failed_polish_falls_back_to_consensus(fake_tools, run_config):
    fake_tools.fail("racon", "sample1")

    summary = run_pipeline(run_config)

    sample1 = _items_by_id(summary)["sample1"]
    assert sample1["status"] == "completed"
    assert any(w.startswith("Stage polish failed") for w in sample1["warnings"])
    final = run_config.out_dir / "05_final_consensus" / "sample1.fasta"
    assert final.read_text().startswith(">consensus_1\n")
    assert summary["failed_items"] == []


@pytest.mark.fast
@pytest.mark.integration
def test_stage_failure_is_isolated_per_item(fake_tools, run_config):
    fake_tools.fail("filtlong", "sample1")

    summary = run_pipeline(run_config)

    items = _items_by_id(summary)
    assert items["sample1"]["status"] == "failed"
    assert "filter" in items["sample1"]["error"]
    assert items["sample1"]["phase"] == "prepare"
    assert items["sample2"]["status"] == "completed"
    assert summary["failed_items"] == ["sample1"]
    assert fake_tools.calls_for("autocycler subsample", "sample1") == []
    assert len(fake_tools.calls_for("checkm2")) == 1


@pytest.mark.fast
@pytest.mark.integration
def test_missing_dependency_output_fails_item(fake_tools, run_config):
    fake_tools.produce_nothing("autocycler subsample")

    summary = run_pipeline(run_config)

    for item in summary["items"]:
        assert item["status"] == "failed"
        assert "requires subsample" in item["error"]
    assert fake_tools.calls_for("autocycler helper flye") == []
    # nothing to score
    assert fake_tools.calls_for("checkm2") == []
    assert summary["quality_warnings"]


@pytest.mark.fast
@pytest.mark.integration
def test_retry_after_transient_failure(fake_tools, run_config):
    fake_tools.fail("autocycler compress", "sample1", times=1)

    summary = run_pipeline(run_config.with_overrides(max_retries=1))

    assert len(fake_tools.calls_for("autocycler compress", "sample1")) == 2
    assert _items_by_id(summary)["sample1"]["status"] == "completed"


@pytest.mark.fast
@pytest.mark.integration
def test_parallel_run_matches_sequential(fake_tools, run_config):
    config = run_config.with_overrides(
        parallel_items=2, parallel_assemblies=4, parallel_clusters=2
    )
    summary = run_pipeline(config)
    assert [item["item_id"] for item in summary["items"]] == ["sample1", "sample2"]
    assert all(item["status"] == "completed" for item in summary["items"])
    # 2 samples x 2 assemblers x 2 subsamples
    assert sum(
        len(fake_tools.calls_for(f"autocycler helper {asm}")) for asm in ("flye", "raven")
    ) == 8


@pytest.mark.fast
@pytest.mark.integration
def test_quality_skipped_without_database(fake_tools, run_config):
    summary = run_pipeline(_without_database(run_config))
    assert fake_tools.calls_for("checkm2") == []
    assert summary["quality_report"] is None
    assert summary["quality_error"] is None


@pytest.mark.fast
@pytest.mark.integration
def test_no_input(tmp_path):
    (tmp_path / "reads").mkdir()
    with pytest.raises(NoInputFound):
        run_pipeline(RunConfig(reads_dir=tmp_path / "reads", out_dir=tmp_path / "out"))
    assert not (tmp_path / "out").exists()


@pytest.mark.fast
@pytest.mark.unit
def test_status_before_and_after_run(fake_tools, run_config):
    status = pipeline_status(run_config)
    assert status["sample1"]["normalize"] is None
    assert status["sample2"]["normalize"] is False
    assert status["sample1"]["trim"] == "0/0"
    assert status["*"]["quality"] is False

    run_pipeline(run_config)
    calls = len(fake_tools.calls)

    status = pipeline_status(run_config)
    assert status["sample1"]["filter"] is True
    assert status["sample2"]["resolve"] == "2/2"
    assert status["sample2"]["finalize"] is True
    assert status["*"]["quality"] is True
    assert len(fake_tools.calls) == calls


@pytest.mark.fast
@pytest.mark.unit
def test_required_tools(run_config, reads_dir):
    tools = required_tools(run_config, discover_work_items(reads_dir))
    assert {"filtlong", "autocycler", "minimap2", "racon", "samtools", "checkm2"} == set(tools)

    (reads_dir / "sample2.bam").unlink()
    tools = required_tools(_without_database(run_config), discover_work_items(reads_dir))
    assert "samtools" not in tools
    assert "checkm2" not in tools


@pytest.mark.fast
@pytest.mark.unit
def test_check_required_tools_reports_missing(monkeypatch):
    monkeypatch.setattr(
        pipeline_module.shutil, "which", lambda tool: None if tool == "racon" else f"/bin/{tool}"
    )
    with pytest.raises(ToolNotFound, match="racon"):
        check_required_tools(["filtlong", "racon"])
    check_required_tools(["filtlong"])


@pytest.mark.fast
@pytest.mark.integration
def test_cli_exit_codes(fake_tools, run_config, tmp_path):
    args = [
        "--reads-dir", str(run_config.reads_dir),
        "--out-dir", str(run_config.out_dir),
        "--threads", "2",
        "--assemblers", "flye,raven",
        "--subsample-count", "2",
        "--skip-tool-check",
    ]
    assert main(args + ["--status"]) == EXIT_OK
    assert fake_tools.calls == []

    assert main(args) == EXIT_OK
    assert (run_config.out_dir / "05_final_consensus" / "sample1.fasta").is_file()

    empty = tmp_path / "empty"
    empty.mkdir()
    assert main(["--reads-dir", str(empty), "--out-dir", str(tmp_path / "o")]) == EXIT_SETUP_FAILURE


@pytest.mark.fast
@pytest.mark.integration
def test_cli_reports_item_failures(fake_tools, run_config, tmp_path):
    config_path = tmp_path / "run.yaml"
    run_config.write_config(config_path)
    fake_tools.fail("autocycler cluster", "sample2")

    assert main(["--config", str(config_path)]) == EXIT_ITEM_FAILURES
    summary = json.loads((run_config.out_dir / "run_summary.json").read_text())
    assert summary["failed_items"] == ["sample2"]


@pytest.mark.fast
@pytest.mark.integration
def test_unreadable_final_assembly_does_not_stop_run(fake_tools, run_config, monkeypatch):
    final_dir = run_config.out_dir / "05_final_consensus"
    final_dir.mkdir(parents=True)
    unreadable = final_dir / "sample1.fasta"
    unreadable.write_text("not a fasta file\n")
    fasta_stats = pipeline_module._fasta_stats

    def stats_or_parse_error(path):
        if path == unreadable:
            raise ValueError("This FASTA file contains comments at the beginning of the file")
        return fasta_stats(path)

    monkeypatch.setattr(pipeline_module, "_fasta_stats", stats_or_parse_error)

    summary = run_pipeline(run_config)

    items = _items_by_id(summary)
    assert items["sample1"]["status"] == "completed"
    assert items["sample1"]["contig_count"] == 0
    assert any(w.startswith("statistics:") for w in items["sample1"]["warnings"])
    assert items["sample2"]["status"] == "completed"
    assert items["sample2"]["contig_count"] == 1
    assert len(fake_tools.calls_for("checkm2")) == 1
    assert (run_config.out_dir / "run_summary.json").is_file()


@pytest.mark.fast
@pytest.mark.integration
def test_cli_config_with_empty_section_or_list(fake_tools, run_config, tmp_path):
    config_path = tmp_path / "run.yaml"
    config_path.write_text(f"input: {{reads_dir: {run_config.reads_dir}}}\nquality:\n")
    assert main(["--config", str(config_path), "--status"]) == EXIT_OK

    config_path.write_text("- just\n- a list\n")
    assert main(["--config", str(config_path), "--status"]) == EXIT_SETUP_FAILURE
