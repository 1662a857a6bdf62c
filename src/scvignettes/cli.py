"""Command-line entry point: list, build and configure the vignettes."""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .core.parallel.backends import BACKENDS
from .core.transcriptomics.datasets import DATASETS
from .core.transcriptomics.sc_rna_processor import ScRNAParameters
from .workflow.pipeline.runner import WorkflowExecutionError
from .workflow.vignettes import VIGNETTES, build_vignettes

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _dataset_kwargs(dataset: str, n_cells: Optional[int]) -> Dict[str, Any]:
    if n_cells is None:
        return {}
    if dataset == "simulated":
        return {"n_cells": n_cells}
    if dataset == "brain1.3m":
        return {"max_cells": n_cells}
    logger.warning(f"--n-cells is ignored for dataset {dataset}")
    return {}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scvignettes",
        description="Single-cell RNA-seq analysis vignettes",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List available vignettes")

    build = subparsers.add_parser(
        "build", help="Run vignettes and render them as HTML", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    build.add_argument("names", nargs="*", metavar="NAME", help=f"Vignettes to build (default: all of {list(VIGNETTES)})")

    io_group = build.add_argument_group("Input/Output Options")
    io_group.add_argument("--output-dir", default="site", help="Directory for pages, figures and intermediate files")
    io_group.add_argument("--dataset", choices=sorted(DATASETS), default="simulated", help="Input dataset")
    io_group.add_argument("--n-cells", type=int, default=None, help="Number of cells to simulate or read")
    io_group.add_argument("--params", default=None, help="YAML file with analysis parameters")

    exec_group = build.add_argument_group("Execution Options")
    exec_group.add_argument("--backend", choices=sorted(BACKENDS), default="multicore",
                            help="Parallel backend for blockwise computations")
    exec_group.add_argument("--workers", type=int, default=2, help="Number of parallel workers")
    exec_group.add_argument("--submit-command", default="sbatch", help="Job submission command for the batchjobs backend")
    exec_group.add_argument("--keep-going", action="store_true", help="Build the remaining vignettes after a failure")
    exec_group.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    exec_group.add_argument("--log-file", default=None, help="Also write the log to this file")

    params = subparsers.add_parser("params", help="Write the default analysis parameters as YAML")
    params.add_argument("--output", default="params.yaml", help="Output YAML file")

    return parser


def _list() -> int:
    width = max(len(name) for name in VIGNETTES)
    for name, module in VIGNETTES.items():
        print(f"{name:<{width}}  {module.TITLE}")
    return 0


def _build(args: argparse.Namespace) -> int:
    unknown = [name for name in args.names if name not in VIGNETTES]
    if unknown:
        logger.error(f"Unknown vignettes: {unknown}. Available: {list(VIGNETTES)}")
        return 2
    if args.workers < 1:
        logger.error("--workers must be at least 1")
        return 2

    try:
        params = ScRNAParameters.load_from_yaml(args.params) if args.params else ScRNAParameters()
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    parameters = {
        "params": params,
        "dataset": args.dataset,
        "dataset_kwargs": _dataset_kwargs(args.dataset, args.n_cells),
        "backend": args.backend,
        "workers": args.workers,
        "submit_command": args.submit_command,
    }

    start_time = time.time()
    try:
        built = build_vignettes(args.names or None, output_dir=args.output_dir, parameters=parameters,
                                halt_on_error=not args.keep_going)
    except WorkflowExecutionError as e:
        logger.error(f"Build halted after {time.time() - start_time:.1f}s: {e}")
        return 1

    failed = [name for name, entry in built.items() if entry["status"] != "COMPLETED"]
    for name, entry in built.items():
        logger.info(f"  {name}: {entry['status']} -> {entry['page']}")
    if failed:
        logger.error(f"{len(failed)} vignette(s) failed: {failed}")
        return 1

    logger.info(f"Built {len(built)} vignettes in {time.time() - start_time:.1f}s; index at {Path(args.output_dir) / 'index.html'}")
    return 0


def _params(args: argparse.Namespace) -> int:
    ScRNAParameters().save_to_yaml(args.output)
    print(args.output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", False), getattr(args, "log_file", None))

    if args.command == "list":
        return _list()
    if args.command == "build":
        return _build(args)
    return _params(args)


if __name__ == "__main__":
    sys.exit(main())
