#!/usr/bin/env python3
"""CLI entry point for iql-deploy.

Noun-action subcommands:
- ./iql-deploy stack build my-stack dev -e AZURE_SUBSCRIPTION_ID=...
- ./iql-deploy stack test my-stack dev
- ./iql-deploy stack teardown my-stack dev

Nouns:
- stack: Stack lifecycle (build/test/teardown)
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (build/test/teardown)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get the installed distribution version."""
    try:
        return version('iql-deploy')
    except PackageNotFoundError:
        return 'dev'


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        from reconcile.cli import main as stack_main
        rc: int = stack_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage() -> None:
    print("Usage: iql-deploy <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, description in NOUN_COMMANDS.items():
        print(f"  {noun:<9} {description}")
    print()
    print("Options:")
    print("  --version  Show version and exit")


def main(argv: list = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg == '--version':
        print(f"iql-deploy {get_version()}")
        return 0
    if first_arg in ('-h', '--help'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
