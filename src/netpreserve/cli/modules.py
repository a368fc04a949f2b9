"""
netpreserve modules - network construction and module detection.

Builds the weighted coexpression network of a reference dataset and
detects its modules.

Usage:
    netpreserve modules --input diploid.csv --output results/modules --min-module-size 200
"""

import argparse
from pathlib import Path

from netpreserve.cli._common import (
    NETWORK_ARGS,
    add_common_arguments,
    add_network_arguments,
    resolve_config,
    setup_logging,
)
from netpreserve.cli._validators import _non_negative_float, _positive_int

MODULE_ARGS = {
    **NETWORK_ARGS,
    'min_module_size': ('modules', 'min_module_size'),
    'deep_split': ('modules', 'deep_split'),
    'merge_height': ('modules', 'merge_height'),
    'reassign_threshold': ('modules', 'reassign_threshold'),
    'seed': ('preservation', 'seed'),
}


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the modules subcommand."""
    parser = subparsers.add_parser(
        "modules",
        help="Build the reference network and detect modules",
        description=(
            "Compute adjacency and topological overlap for a reference expression "
            "matrix, cut the TOM dendrogram into modules, merge close modules and "
            "write the assignment, eigengenes and gene lists."
        )
    )

    parser.add_argument("--input", "-i", type=Path, required=True,
                        help="Reference expression CSV/TSV (genes x samples)")
    parser.add_argument("--output", "-o", type=Path, default=Path("results/modules"),
                        help="Output directory")
    add_common_arguments(parser)
    add_network_arguments(parser)

    parser.add_argument("--min-module-size", type=_positive_int, default=None,
                        help="Smallest module (default: 200)")
    parser.add_argument("--deep-split", type=int, choices=range(5), default=None,
                        help="Branch cut sensitivity 0-4 (default: 2)")
    parser.add_argument("--merge-height", type=_non_negative_float, default=None,
                        help="Merge modules with eigengene distance below this (default: 0.25)")
    parser.add_argument("--reassign-threshold", type=_non_negative_float, default=None,
                        help="kME margin for moving genes between modules (default: 0.001)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for tie-breaking (default: 42)")
    parser.add_argument("--drop-failing", action="store_true",
                        help="Drop genes/samples failing integrity checks instead of stopping")
    parser.add_argument("--submodules", action="store_true",
                        help="Also detect submodules inside every module")

    parser.set_defaults(func=run_modules)


def run_modules(args: argparse.Namespace) -> int:
    """Execute the modules command."""
    import logging
    import warnings

    from netpreserve.exceptions import InputIntegrityError, ThresholdSelectionWarning
    from netpreserve.io.loaders import load_expression_matrix
    from netpreserve.io.writers import (
        write_eigengenes,
        write_gene_lists,
        write_json,
        write_module_assignment,
    )
    from netpreserve.pipeline import detect_reference_modules
    from netpreserve.quality.integrity import IntegrityFilter

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config = resolve_config(args, MODULE_ARGS)

    logger.info(f"Loading: {args.input}")
    matrix = load_expression_matrix(args.input)
    if args.drop_failing:
        matrix = IntegrityFilter().apply(matrix)

    args.output.mkdir(parents=True, exist_ok=True)

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ThresholdSelectionWarning)
            result = detect_reference_modules(
                matrix, config, with_submodules=args.submodules, verbose=args.verbose
            )
    except InputIntegrityError as e:
        logger.error(f"{e}")
        logger.error("Re-run with --drop-failing to exclude the failing genes/samples")
        return 1

    for w in caught:
        logger.warning(str(w.message))

    network = result.network
    if network.soft_threshold is not None:
        network.soft_threshold.fit_table.to_csv(args.output / "soft_threshold.csv", index=False)

    assignment = result.assignment
    write_module_assignment(assignment, args.output / "assignment.csv")
    write_eigengenes(result.detection.eigengenes, args.output / "eigengenes.csv")
    write_gene_lists(assignment.gene_lists(), args.output / "gene_lists")
    network.connectivity.to_csv(args.output / "connectivity.csv", index_label="gene")

    for label, sub in result.submodules.items():
        write_module_assignment(sub.assignment, args.output / "submodules" / f"M{label}_assignment.csv")

    summary = {
        'input': str(args.input),
        'power': network.power,
        'power_selected_automatically': network.soft_threshold is not None,
        'scale_free_fit_satisfied': (
            None if network.soft_threshold is None else network.soft_threshold.satisfied
        ),
        'detection': result.detection.to_dict(),
        'submodules': {int(k): v.to_dict() for k, v in result.submodules.items()},
        'config': config.to_dict(),
    }
    write_json(summary, args.output / "summary.json")

    logger.info(
        f"Found {len(assignment.modules)} modules "
        f"({assignment.n_unassigned} of {len(assignment)} genes unassigned), power {network.power:g}"
    )
    return 0
