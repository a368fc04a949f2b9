"""Helpers shared by the netpreserve subcommands."""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Tuple

from netpreserve.cli._validators import _positive_float, _positive_int
from netpreserve.config import PipelineConfig, load_config, merge_config_with_args

# CLI destination -> (config section, field)
NETWORK_ARGS: Dict[str, Tuple[str, str]] = {
    'power': ('network', 'power'),
    'adjacency_type': ('network', 'adjacency_type'),
    'overlap': ('network', 'overlap'),
}

PRESERVATION_ARGS: Dict[str, Tuple[str, str]] = {
    'n_permutations': ('preservation', 'n_permutations'),
    'min_score_size': ('preservation', 'min_module_size'),
    'seed': ('preservation', 'seed'),
    'workers': ('preservation', 'n_jobs'),
    'permutation_workers': ('preservation', 'permutation_jobs'),
    'checkpoint_dir': ('preservation', 'checkpoint_dir'),
}


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="YAML/JSON config file (CLI flags override it)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging and progress bars")


def add_network_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--power", type=_positive_float, default=None,
                        help="Soft-threshold power (default: scale-free fit selection)")
    parser.add_argument("--adjacency-type", choices=["unsigned", "signed", "signed_hybrid"],
                        default=None, help="Adjacency transform (default: unsigned)")
    parser.add_argument("--overlap", choices=["min", "product"], default=None,
                        help="TOM neighbourhood overlap (default: min)")


def add_preservation_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--n-permutations", type=_positive_int, default=None,
                        help="Random gene sets per module and dataset (default: 200)")
    parser.add_argument("--min-score-size", type=_positive_int, default=None,
                        help="Modules smaller than this get NA scores (default: 5)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Top-level random seed (default: 42)")
    parser.add_argument("--workers", type=_positive_int, default=None,
                        help="Parallel module x dataset units (default: 1)")
    parser.add_argument("--permutation-workers", type=_positive_int, default=None,
                        help="Parallel permutation chunks per unit (default: 1)")
    parser.add_argument("--processes", action="store_true",
                        help="Use processes instead of threads for units")
    parser.add_argument("--checkpoint-dir", type=Path, default=None,
                        help="Persist finished units here and resume from them")


def add_assignment_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--assignment", "-a", type=Path,
                       help="Module assignment CSV (gene,module)")
    group.add_argument("--gene-lists", type=Path,
                       help="Directory of <index>_M<label>.txt gene lists")


def resolve_config(args: argparse.Namespace, mapping: Dict[str, Tuple[str, str]]) -> PipelineConfig:
    """Config file (if any) with explicitly given CLI flags applied on top."""
    raw = load_config(args.config) if args.config is not None else {}
    config = PipelineConfig.from_dict(raw)
    config = merge_config_with_args(config, args, mapping)
    if getattr(args, 'processes', False):
        config = replace(config, preservation=replace(config.preservation, use_processes=True))
    return config


def load_assignment(args: argparse.Namespace, gene_ids):
    from netpreserve.io.loaders import (
        assignment_from_gene_lists,
        load_gene_lists,
        load_module_assignment,
    )

    if args.assignment is not None:
        return load_module_assignment(args.assignment)
    return assignment_from_gene_lists(load_gene_lists(args.gene_lists), gene_ids)
