"""
netpreserve preserve - module preservation in comparison datasets.

Scores every reference module in one or more comparison datasets
(e.g. a tetraploid condition group) with the permutation Z-summary.

Usage:
    netpreserve preserve --reference diploid.csv --assignment results/modules/assignment.csv \\
        --comparison 4x=tetraploid.csv --output results/preservation
"""

import argparse
from pathlib import Path

from netpreserve.cli._common import (
    NETWORK_ARGS,
    PRESERVATION_ARGS,
    add_assignment_arguments,
    add_common_arguments,
    add_network_arguments,
    add_preservation_arguments,
    load_assignment,
    resolve_config,
    setup_logging,
)
from netpreserve.cli._validators import _labelled_path

PRESERVE_ARGS = {**NETWORK_ARGS, **PRESERVATION_ARGS}


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the preserve subcommand."""
    parser = subparsers.add_parser(
        "preserve",
        help="Score reference module preservation in comparison datasets",
        description=(
            "For every (module, comparison dataset) pair compute the preservation "
            "statistic battery, its permutation null and the Z-summary. Datasets "
            "failing integrity checks are reported in failures.csv; the rest are scored."
        )
    )

    parser.add_argument("--reference", "-r", type=Path, required=True,
                        help="Reference expression CSV/TSV (genes x samples)")
    parser.add_argument("--reference-label", default="reference",
                        help="Label of the reference dataset in the output (default: reference)")
    add_assignment_arguments(parser)
    parser.add_argument("--comparison", type=_labelled_path, action="append", required=True,
                        metavar="LABEL=PATH",
                        help="Comparison dataset (repeatable)")
    parser.add_argument("--module", type=int, action="append", default=None,
                        help="Score only this module label (repeatable; default: all)")
    parser.add_argument("--output", "-o", type=Path, default=Path("results/preservation"),
                        help="Output directory")
    add_common_arguments(parser)
    add_network_arguments(parser)
    add_preservation_arguments(parser)

    parser.set_defaults(func=run_preserve)


def run_preserve(args: argparse.Namespace) -> int:
    """Execute the preserve command."""
    import logging

    from netpreserve.exceptions import InputIntegrityError
    from netpreserve.io.loaders import load_expression_matrix
    from netpreserve.io.writers import write_json, write_preservation_table
    from netpreserve.pipeline import build_network, run_preservation
    from netpreserve.preservation.records import DatasetRole, TaggedDataset

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config = resolve_config(args, PRESERVE_ARGS)

    labels = [label for label, _ in args.comparison]
    if len(set(labels)) != len(labels) or args.reference_label in labels:
        logger.error(f"Dataset labels must be unique, got reference "
                     f"'{args.reference_label}' and comparisons {labels}")
        return 1

    logger.info(f"Loading reference: {args.reference}")
    reference = TaggedDataset(
        DatasetRole.REFERENCE, args.reference_label, load_expression_matrix(args.reference)
    )
    assignment = load_assignment(args, reference.matrix.gene_ids)

    power = config.network.power
    if power is None:
        logger.info("No --power given, selecting it from the reference network")
        try:
            power = build_network(reference.matrix, config.network, verbose=args.verbose).power
        except InputIntegrityError as e:
            logger.error(f"Reference failed integrity checks: {e}")
            return 1

    datasets = []
    for label, path in args.comparison:
        logger.info(f"Loading comparison '{label}': {path}")
        datasets.append(
            TaggedDataset(DatasetRole.COMPARISON_GROUP, label, load_expression_matrix(Path(path)))
        )

    result = run_preservation(
        reference, assignment, datasets, config, power=power, modules=args.module
    )

    args.output.mkdir(parents=True, exist_ok=True)
    write_preservation_table(result.records, args.output / "preservation.csv")
    result.failures.to_csv(args.output / "failures.csv", index=False)
    write_json(
        {
            'reference': str(args.reference),
            'comparisons': {label: path for label, path in args.comparison},
            'power': power,
            'n_units': len(result.outcomes),
            'n_failed': result.n_failed,
            'config': config.to_dict(),
        },
        args.output / "summary.json",
    )

    summary = result.summary_table()
    if not summary.empty:
        logger.info(f"Z-summary by module and dataset:\n{summary.to_string()}")
    if result.n_failed:
        logger.warning(f"{result.n_failed} units failed, see {args.output / 'failures.csv'}")
    return 0
