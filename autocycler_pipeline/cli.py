#!/usr/bin/env python3
"""Run the Autocycler assembly pipeline over every read file in a directory.

Each read file (.fastq, .fastq.gz, .fq, .fq.gz or unaligned .bam) is filtered,
subsampled, assembled with several assemblers, combined into an Autocycler
consensus, polished with Racon and copied to 05_final_consensus/. CheckM2 then
scores every final assembly. Stages whose output already exists are skipped, so
an interrupted run can simply be started again.

Usage:
    autocycler-pipeline --reads-dir reads --threads 32 --read-type pacbio_hifi \\
        --checkm2-db /path/to/uniref100.KO.1.dmnd
    autocycler-pipeline --config run.yaml --status
"""

import argparse
import logging
import sys
from typing import List, Optional

import yaml

from .errors import NoInputFound, ToolNotFound
from .io_helpers import load_config
from .pipeline import pipeline_status, run_pipeline
from .read_type import ReadType
from .run_config import RunConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITEM_FAILURES = 1
EXIT_SETUP_FAILURE = 2


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def _comma_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="autocycler-pipeline",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--config", "-c", help="YAML configuration file; flags override it")
    p.add_argument("--reads-dir", help="Directory containing input read files (default: reads)")
    p.add_argument("--out-dir", help="Directory for stage outputs (default: .)")
    p.add_argument("--threads", "-t", type=_positive_int, help="Threads per tool (default: all CPUs)")
    p.add_argument(
        "--read-type",
        choices=[rt.value for rt in ReadType],
        help="Read technology (default: ont_r10)",
    )
    p.add_argument(
        "--fallback-genome-size",
        type=_positive_int,
        help="Genome size used when estimation fails (default: 5000000)",
    )
    p.add_argument("--checkm2-db", help="CheckM2 database; quality assessment is skipped without it")
    p.add_argument("--assemblers", type=_comma_list, help="Comma-separated assembler list")
    p.add_argument("--subsample-count", type=_positive_int, help="Read subsets per sample (default: 4)")
    p.add_argument("--min-read-length", type=_positive_int, help="filtlong --min_length (default: 1000)")
    p.add_argument("--keep-percent", type=int, help="filtlong --keep_percent (default: 95)")
    p.add_argument("--parallel-items", type=_positive_int, help="Samples processed at once (default: 1)")
    p.add_argument(
        "--parallel-assemblies", type=_positive_int, help="Assemblies run at once per sample (default: 1)"
    )
    p.add_argument(
        "--parallel-clusters", type=_positive_int, help="Clusters resolved at once per sample (default: 1)"
    )
    p.add_argument("--max-retries", type=int, help="Extra attempts for a failing tool (default: 0)")
    p.add_argument(
        "--strict-assembly-check",
        action="store_true",
        default=None,
        help="Treat assembly as done only when every assembler produced every assembly",
    )
    p.add_argument(
        "--skip-tool-check",
        action="store_true",
        help="Do not check that required executables are on PATH",
    )
    p.add_argument("--status", action="store_true", help="Report which stages are complete and exit")
    p.add_argument("--verbose", "-v", action="store_true", help="Log debug messages")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> RunConfig:
    base = RunConfig.from_config(load_config(args.config)) if args.config else RunConfig()
    return base.with_overrides(
        reads_dir=args.reads_dir,
        out_dir=args.out_dir,
        threads=args.threads,
        read_type=args.read_type,
        fallback_genome_size=args.fallback_genome_size,
        checkm2_database=args.checkm2_db,
        assemblers=tuple(args.assemblers) if args.assemblers else None,
        subsample_count=args.subsample_count,
        min_read_length=args.min_read_length,
        keep_percent=args.keep_percent,
        parallel_items=args.parallel_items,
        parallel_assemblies=args.parallel_assemblies,
        parallel_clusters=args.parallel_clusters,
        max_retries=args.max_retries,
        strict_assembly_check=args.strict_assembly_check,
        check_tools=False if args.skip_tool_check else None,
    )


def _state_symbol(state) -> str:
    if state is None:
        return "-"
    if state is True:
        return "done"
    if state is False:
        return "todo"
    return str(state)


def print_status(config: RunConfig) -> None:
    status = pipeline_status(config)
    run_level = status.pop("*")
    if status:
        stage_names = list(next(iter(status.values())))
        width = max(len("sample"), *(len(k) for k in status))
        print("sample".ljust(width), *(name.ljust(10) for name in stage_names))
        for item_id, stages in status.items():
            print(item_id.ljust(width), *(_state_symbol(stages[n]).ljust(10) for n in stage_names))
    for name, state in run_level.items():
        print(f"{name}: {_state_symbol(state)}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )

    try:
        config = build_config(args)
        if args.status:
            print_status(config)
            return EXIT_OK
        summary = run_pipeline(config)
    except (NoInputFound, ToolNotFound, ValueError, OSError, yaml.YAMLError) as e:
        logger.error(str(e))
        return EXIT_SETUP_FAILURE

    if summary["failed_items"] or summary["quality_error"]:
        return EXIT_ITEM_FAILURES
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
