"""
netpreserve simulate - duplication simulation and preservation baselines.

Generates synthetic duplicated-genome replicates of the reference
(jitter at every noise factor, optionally with unbalanced random or hub
genes) and scores the chosen modules in each replicate. The median
Z-summary per noise factor shows how much preservation a pure
duplication event would leave behind.

Usage:
    netpreserve simulate --reference diploid.csv --assignment results/modules/assignment.csv \\
        --module 1 --noise-factors 0.1 0.5 1.0 --numsim 10 --output results/simulation
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
from netpreserve.cli._validators import _non_negative_float, _positive_int, _probability, _quantile

SIMULATE_ARGS = {
    **NETWORK_ARGS,
    **PRESERVATION_ARGS,
    'noise_factors': ('simulation', 'noise_factors'),
    'numsim': ('simulation', 'numsim'),
    'scenarios': ('simulation', 'scenarios'),
    'hub_quantile': ('simulation', 'hub_quantile'),
    'imbalance_fraction': ('simulation', 'imbalance_fraction'),
    'imbalance_sample_fraction': ('simulation', 'imbalance_sample_fraction'),
}


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the simulate subcommand."""
    parser = subparsers.add_parser(
        "simulate",
        help="Simulate duplicated genomes and score module preservation in them",
        description=(
            "Duplicate the reference expression matrix (x2 with uniform jitter), "
            "optionally leave a fraction of random or hub genes undoubled in some "
            "samples, and score module preservation in every replicate."
        )
    )

    parser.add_argument("--reference", "-r", type=Path, required=True,
                        help="Reference expression CSV/TSV (genes x samples)")
    parser.add_argument("--reference-label", default="reference",
                        help="Label of the reference dataset in the output (default: reference)")
    add_assignment_arguments(parser)
    parser.add_argument("--module", type=int, action="append", required=True,
                        help="Module label to simulate (repeatable)")
    parser.add_argument("--noise-factors", type=_non_negative_float, nargs="+", default=None,
                        help="Jitter amplitudes relative to each value (default: 0.05 0.1 0.25 0.5 1.0)")
    parser.add_argument("--numsim", type=_positive_int, default=None,
                        help="Replicates per noise factor and scenario (default: 10)")
    parser.add_argument("--scenarios", nargs="+", default=None,
                        choices=["control", "random_imbalance", "hub_imbalance"],
                        help="Simulation scenarios (default: all three)")
    parser.add_argument("--hub-quantile", type=_quantile, default=None,
                        help="Connectivity quantile defining hub genes (default: 0.75)")
    parser.add_argument("--imbalance-fraction", type=_probability, default=None,
                        help="Fraction of candidate genes left unbalanced (default: 0.5)")
    parser.add_argument("--imbalance-sample-fraction", type=_probability, default=None,
                        help="Fraction of samples in which unbalanced genes stay undoubled (default: 0.5)")
    parser.add_argument("--write-matrices", action="store_true",
                        help="Also write every simulated matrix with its provenance flags")
    parser.add_argument("--output", "-o", type=Path, default=Path("results/simulation"),
                        help="Output directory")
    add_common_arguments(parser)
    add_network_arguments(parser)
    add_preservation_arguments(parser)

    parser.set_defaults(func=run_simulate)


def run_simulate(args: argparse.Namespace) -> int:
    """Execute the simulate command."""
    import logging
    from dataclasses import replace

    import pandas as pd

    from netpreserve.exceptions import InputIntegrityError
    from netpreserve.io.loaders import load_expression_matrix
    from netpreserve.io.writers import write_expression_matrix, write_json, write_preservation_table
    from netpreserve.pipeline import build_network, run_simulation_study
    from netpreserve.preservation.records import DatasetRole, TaggedDataset

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config = resolve_config(args, SIMULATE_ARGS)
    if args.seed is not None:
        config = replace(config, simulation=replace(config.simulation, seed=args.seed))

    logger.info(f"Loading reference: {args.reference}")
    reference = TaggedDataset(
        DatasetRole.REFERENCE, args.reference_label, load_expression_matrix(args.reference)
    )
    assignment = load_assignment(args, reference.matrix.gene_ids)

    missing = [m for m in args.module if m not in assignment.modules]
    if missing:
        logger.error(f"Modules {missing} not in assignment (available: {assignment.modules})")
        return 1

    power = config.network.power
    if power is None:
        logger.info("No --power given, selecting it from the reference network")
        try:
            power = build_network(reference.matrix, config.network, verbose=args.verbose).power
        except InputIntegrityError as e:
            logger.error(f"Reference failed integrity checks: {e}")
            return 1

    args.output.mkdir(parents=True, exist_ok=True)
    tables = []
    medians = []
    failures = []
    for module in args.module:
        logger.info(f"Simulating module {module} ({len(assignment.genes(module))} genes)")
        matrix_dir = args.output / "matrices" / f"M{module}"

        def write_replicate(sim, matrix_dir=matrix_dir):
            write_expression_matrix(
                sim.matrix, matrix_dir / f"{sim.descriptor.label}.csv", write_provenance=True
            )

        study = run_simulation_study(
            reference, assignment, module, config, power=power,
            on_dataset=write_replicate if args.write_matrices else None,
            verbose=args.verbose,
        )
        tables.append(study.preservation.records)
        failures.append(study.preservation.failures)
        median = study.median_z_by_noise()
        median.insert(0, 'module', module)
        medians.append(median)

        if args.write_matrices:
            write_json(
                {'datasets': [d.to_dict() for d in study.descriptors]},
                matrix_dir / "descriptors.json",
            )

    records = pd.concat(tables, ignore_index=True)
    write_preservation_table(records, args.output / "simulation.csv")
    pd.concat(medians, ignore_index=True).to_csv(args.output / "median_z.csv", index=False)
    failed = pd.concat(failures, ignore_index=True)
    failed.to_csv(args.output / "failures.csv", index=False)
    write_json(
        {
            'reference': str(args.reference),
            'modules': list(args.module),
            'power': power,
            'n_replicates': len(records) + len(failed),
            'n_failed': len(failed),
            'config': config.to_dict(),
        },
        args.output / "summary.json",
    )

    if len(failed):
        logger.warning(f"{len(failed)} replicates failed, see {args.output / 'failures.csv'}")
    logger.info(f"Simulation complete: {len(records)} scored replicates")
    return 0
