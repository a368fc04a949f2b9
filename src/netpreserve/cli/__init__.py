"""
netpreserve CLI - Command-line interface for coexpression module preservation.

Commands:
    netpreserve modules   - Build the reference network and detect modules
    netpreserve preserve  - Score module preservation in comparison datasets
    netpreserve simulate  - Duplication simulation baselines for chosen modules
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for netpreserve."""
    parser = argparse.ArgumentParser(
        prog="netpreserve",
        description="Weighted coexpression modules and their preservation after genome duplication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  modules   Build the reference network and detect modules
  preserve  Score module preservation in comparison datasets
  simulate  Duplication simulation baselines for chosen modules

Examples:
  netpreserve modules --input diploid.csv --output results/modules
  netpreserve preserve --reference diploid.csv -a results/modules/assignment.csv \\
      --comparison 4x=tetraploid.csv --power 6
  netpreserve simulate --reference diploid.csv -a results/modules/assignment.csv \\
      --module 1 --noise-factors 0.1 0.5 --numsim 10
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Import and register subcommands
    from netpreserve.cli import modules, preserve, simulate
    modules.register_parser(subparsers)
    preserve.register_parser(subparsers)
    simulate.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Dispatch to subcommand
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
