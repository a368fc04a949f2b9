"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--hub-quantile 1.5``, ``--n-permutations -5``). They are
intended to be used as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _probability(value: str) -> float:
    """argparse type for fractions in the half-open interval (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid fraction (must be in (0, 1])"
        )
    return fvalue


def _quantile(value: str) -> float:
    """argparse type for quantiles in [0, 1)."""
    fvalue = float(value)
    if not (0 <= fvalue < 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid quantile (must be in [0, 1))"
        )
    return fvalue


def _positive_float(value: str) -> float:
    """argparse type for positive floats (> 0)."""
    fvalue = float(value)
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive float")
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0 (noise factors, merge heights)."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} must not be negative")
    return fvalue


def _labelled_path(value: str) -> tuple[str, str]:
    """argparse type for LABEL=PATH pairs."""
    label, sep, path = value.partition('=')
    if not sep or not label or not path:
        raise argparse.ArgumentTypeError(f"{value} is not of the form LABEL=PATH")
    return label, path
