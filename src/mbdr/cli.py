"""
mbdr Unified Command-Line Interface

Exposes three subcommands:

    mbdr info    FILE...                     Print container headers
    mbdr extract FILE [--block NAME] [...]   Dump data blocks to CSV
    mbdr release [options] FILE...           Vesicle release analysis

The package must be installed (``pip install -e .``) for the ``mbdr`` entry
point to be available.

Package Location: src/mbdr/cli.py
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__


# ===========================================================================
# Shared helpers
# ===========================================================================

def _die(message: str) -> None:
    """Print an error message and exit with status 1.

    Args:
        message: Human-readable error text.
    """
    print(f"\nError: {message}", file=sys.stderr)
    sys.exit(1)


def _setup_logging(args: argparse.Namespace) -> None:
    from .utils.logging import configure_logging

    level = logging.INFO if getattr(args, "verbose", False) else logging.WARNING
    configure_logging(level=level, json_format=getattr(args, "log_json", False))


# ===========================================================================
# Subcommand handlers
# ===========================================================================

# ---------------------------------------------------------------------------
# info
# ---------------------------------------------------------------------------

def handle_info(args: argparse.Namespace) -> None:
    """Print the header of every given file without decoding its payload.

    Args:
        args: Parsed CLI arguments.  Fields: ``files``, ``names``.
    """
    from .analysis.decoders import FormatError
    from .data.reader import ContainerReadError, read_header

    failures = 0
    for path in args.files:
        try:
            header = read_header(path).header
        except (ContainerReadError, FormatError) as exc:
            failures += 1
            print(f"{path}: {type(exc).__name__}: {exc}", file=sys.stderr)
            continue

        print(f"{path}")
        print(f"    API version: {header.api_version.tag}")
        print(f"    time step:   {header.time_step:g} s")
        print(f"    iterations:  {header.iteration_count}")
        print(f"    blocks:      {header.block_count}")
        if args.names:
            for name in header.block_names:
                print(f"        {name}")

    if failures:
        sys.exit(1)


# ---------------------------------------------------------------------------
# extract
# ---------------------------------------------------------------------------

def handle_extract(args: argparse.Namespace) -> None:
    """Decode one file and write the selected blocks to CSV.

    Args:
        args: Parsed CLI arguments.  Fields: ``file``, ``block``, ``regex``,
              ``output``.
    """
    from .analysis.decoders import FormatError
    from .data.reader import ContainerReadError, get_blocks, read

    source = Path(args.file)
    try:
        trace = read(source)
        df = get_blocks(trace, names=args.block, pattern=args.regex)
    except (ContainerReadError, FormatError, KeyError) as exc:
        _die(f"{source}: {exc}")

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    target = out_dir / f"{source.name.split('.')[0]}.csv"
    df.to_csv(target)
    print(f"wrote {len(df.columns) - 1} block(s) x {len(df)} iterations -> {target}")


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------

def _resolve_models(args: argparse.Namespace):
    """Assemble the model configuration: preset or JSON, then CLI overrides."""
    from .config import MOUSE_NMJ_FUSION, MOUSE_NMJ_MODEL, load_model_config

    if args.config:
        model, fusion = load_model_config(Path(args.config))
    else:
        model, fusion = MOUSE_NMJ_MODEL, MOUSE_NMJ_FUSION

    overrides = {}
    if args.sites is not None:
        overrides["num_sites_required_per_sensor"] = args.sites
    if args.active is not None:
        overrides["num_sensors_required_active"] = args.active
    if args.energy_model:
        overrides["energy_model"] = True
    if overrides:
        fusion = dataclasses.replace(fusion, **overrides)
    return model, fusion


def handle_release(args: argparse.Namespace) -> None:
    """Run the threaded release analysis over all given files.

    Configuration errors abort before any file is read.  Per-file errors
    are reported in the summary and make the exit status 1.

    Args:
        args: Parsed CLI arguments.
    """
    from .config import ConfigError
    from .data.batch import BatchError, BatchRunner
    from .reports.summary import format_summary, summarize, write_outcomes_csv

    _setup_logging(args)

    try:
        model, fusion = _resolve_models(args)
        runner = BatchRunner(model, fusion, threads=args.threads, seed=args.seed)
    except (ConfigError, ValueError) as exc:
        _die(f"invalid configuration: {exc}")

    try:
        report = runner.run(args.files)
    except BatchError as exc:
        _die(str(exc))

    print(format_summary(report))

    if args.stats:
        print()
        print(summarize(report).to_string(index=False))

    if args.csv:
        print(f"\noutcomes -> {write_outcomes_csv(report, Path(args.csv))}")

    if args.html:
        from .plotting.latency import plot_latency_histogram

        fig = plot_latency_histogram(
            report.to_dataframe(), bin_width_ms=args.bin_width,
        )
        target = Path(args.html)
        target.parent.mkdir(parents=True, exist_ok=True)
        fig.write_html(str(target))
        print(f"histogram -> {target}")

    if report.failed_files:
        sys.exit(1)


# ===========================================================================
# Argument parser construction
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct and return the top-level argument parser.

    Returns:
        Configured ``ArgumentParser`` with ``info``, ``extract`` and
        ``release`` subcommands attached.
    """
    parser = argparse.ArgumentParser(
        prog="mbdr",
        description=(
            "mbdr - MCell binary data reader\n"
            "Inspect, extract and analyse compressed MCell binary output."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    subs = parser.add_subparsers(dest="command", metavar="<command>")
    subs.required = True

    # ------------------------------------------------------------------
    # info
    # ------------------------------------------------------------------
    p_info = subs.add_parser(
        "info",
        help="Print API version, time step, iterations and blocks of files.",
    )
    p_info.add_argument("files", nargs="+", metavar="FILE")
    p_info.add_argument(
        "--names",
        action="store_true",
        default=False,
        help="Also list every block name.",
    )
    p_info.set_defaults(func=handle_info)

    # ------------------------------------------------------------------
    # extract
    # ------------------------------------------------------------------
    p_ext = subs.add_parser(
        "extract",
        help="Write selected data blocks of one file to CSV.",
        description=(
            "Decode a file and write the selected blocks, one column each,\n"
            "to <output>/<file stem>.csv.  Without --block or --regex all\n"
            "blocks are written."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_ext.add_argument("file", metavar="FILE")
    p_ext.add_argument(
        "--block",
        action="append",
        default=None,
        metavar="NAME",
        help="Exact block name to extract (repeatable).",
    )
    p_ext.add_argument(
        "--regex",
        default=None,
        metavar="PATTERN",
        help="Extract every block whose name matches PATTERN.",
    )
    p_ext.add_argument(
        "--output",
        default=".",
        metavar="DIR",
        help="Output directory (default: current directory).",
    )
    p_ext.set_defaults(func=handle_extract)

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------
    p_rel = subs.add_parser(
        "release",
        help="Determine vesicle release events and latencies.",
        description=(
            "Analyse binary output files (one per simulation seed) with the\n"
            "configured sensor topology and fusion model.  Defaults to the\n"
            "mouse NMJ model (6 active zones x 2 vesicles, 8 synaptotagmins)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_rel.add_argument("files", nargs="+", metavar="FILE")
    p_rel.add_argument(
        "-n", "--sites",
        type=int,
        default=None,
        metavar="N",
        help="Number of bound sites required to activate a sensor.",
    )
    p_rel.add_argument(
        "-a", "--active",
        type=int,
        default=None,
        metavar="N",
        help="Number of active sensors required for release "
             "(deterministic model).",
    )
    p_rel.add_argument(
        "-T", "--threads",
        type=int,
        default=1,
        metavar="N",
        help="Number of worker threads.  Each thread holds one decoded file\n"
             "in memory, so memory requirements multiply (default: 1).",
    )
    p_rel.add_argument(
        "--energy-model",
        action="store_true",
        default=False,
        help="Use the stochastic energy model instead of the threshold rule.",
    )
    p_rel.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the energy model; runs with the same seed reproduce.",
    )
    p_rel.add_argument(
        "--config",
        default=None,
        metavar="JSON",
        help="Model configuration file replacing the mouse NMJ preset.",
    )
    p_rel.add_argument(
        "--stats",
        action="store_true",
        default=False,
        help="Print per-vesicle latency statistics.",
    )
    p_rel.add_argument(
        "--csv",
        default=None,
        metavar="PATH",
        help="Write per-vesicle outcomes to a CSV file.",
    )
    p_rel.add_argument(
        "--html",
        default=None,
        metavar="PATH",
        help="Write a latency histogram to an HTML file.",
    )
    p_rel.add_argument(
        "--bin-width",
        type=float,
        default=None,
        metavar="MS",
        help="Histogram bin width in milliseconds.",
    )
    p_rel.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Log progress and per-file warnings.",
    )
    p_rel.add_argument(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit log records as single-line JSON.",
    )
    p_rel.set_defaults(func=handle_release)

    return parser


# ===========================================================================
# Entry point
# ===========================================================================

def main(argv: Optional[List[str]] = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler.

    This function is registered as the ``mbdr`` console script entry point
    in ``pyproject.toml``.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
