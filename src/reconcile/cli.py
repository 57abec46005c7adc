"""CLI handlers for stack verb commands (build, test, teardown).

Usage:
    iql-deploy stack build STACK_DIR STACK_ENV [-e KEY=VALUE]... [--env-file .env]
                           [--dry-run] [--show-queries] [--output-file F]
                           [--json-output] [--verbose]
    iql-deploy stack test STACK_DIR STACK_ENV [...]
    iql-deploy stack teardown STACK_DIR STACK_ENV [...]
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Optional

from config import ConfigError, load_env_vars, load_settings
from reconcile.orchestrator import Mode, run_stack
from reconcile.state import RunResult

logger = logging.getLogger(__name__)

VERB_DESCRIPTIONS = {
    Mode.BUILD: 'Create or update resources in a stack',
    Mode.TEST: 'Check resources in a stack against their desired state',
    Mode.TEARDOWN: 'Delete resources in a stack (reverse order)',
}


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iql-deploy stack {verb}',
        description=VERB_DESCRIPTIONS[verb],
    )
    parser.add_argument(
        'stack_dir',
        help='Stack directory containing stack_manifest.yml',
    )
    parser.add_argument(
        'stack_env',
        help='Target environment (e.g. dev, sit, prod)',
    )
    parser.add_argument(
        '-e', '--env',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Set a stack variable (repeatable, overrides .env)',
    )
    parser.add_argument(
        '--env-file',
        default='.env',
        help='Environment variables file (default: .env)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Render and show queries without executing them',
    )
    parser.add_argument(
        '--show-queries',
        action='store_true',
        help='Log rendered queries',
    )
    parser.add_argument(
        '--output-file',
        help='Write stack exports to this JSON file (build only)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _emit_json(result: RunResult) -> None:
    """Emit structured JSON output."""
    print(json.dumps(result.to_dict(), indent=2, default=str))


def _install_interrupt_handler(cancel: threading.Event):
    """Turn the first Ctrl-C into a cancellation checked at the next query."""
    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, stopping at the next query (Ctrl-C again to abort)")
        cancel.set()
    return signal.signal(signal.SIGINT, _handler)


def _make_executor(settings, dry_run: bool):
    if dry_run:
        return None
    from stackql import StackQLExecutor
    return StackQLExecutor.from_settings(settings)


def _run_verb(verb: str, argv: list) -> int:
    parser = _common_parser(verb)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = load_settings()
        variables = load_env_vars(args.env_file, args.env)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.output_file and verb != Mode.BUILD:
        logger.warning(f"--output-file is ignored for {verb}")

    cancel = threading.Event()
    previous = _install_interrupt_handler(cancel)
    executor = _make_executor(settings, args.dry_run)
    try:
        result = run_stack(
            args.stack_dir,
            args.stack_env,
            verb,
            variable_overrides=variables,
            executor=executor,
            settings=settings,
            dry_run=args.dry_run,
            show_queries=args.show_queries,
            cancel=cancel,
            output_file=args.output_file,
        )
    finally:
        if executor is not None:
            executor.close()
        signal.signal(signal.SIGINT, previous)

    if args.json_output:
        _emit_json(result)

    return exit_code(result)


def exit_code(result: RunResult) -> int:
    """0 when every resource succeeded and a test found no drift, else 1."""
    if not result.success:
        return 1
    if result.mode == Mode.TEST and result.drifted:
        return 1
    return 0


def build_main(argv: list) -> int:
    """Handle 'stack build' verb."""
    return _run_verb(Mode.BUILD, argv)


def test_main(argv: list) -> int:
    """Handle 'stack test' verb."""
    return _run_verb(Mode.TEST, argv)


def teardown_main(argv: list) -> int:
    """Handle 'stack teardown' verb."""
    return _run_verb(Mode.TEARDOWN, argv)


def main(argv: Optional[list] = None) -> int:
    """Dispatch 'stack' noun to verb-specific handler."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0].startswith('-'):
        print("Usage: iql-deploy stack <action> [options]")
        print()
        print("Actions:")
        for verb in Mode.ALL:
            print(f"  {verb:<9} {VERB_DESCRIPTIONS[verb]}")
        print()
        print("Run 'iql-deploy stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == Mode.BUILD:
        return build_main(rest)
    if action == Mode.TEST:
        return test_main(rest)
    if action == Mode.TEARDOWN:
        return teardown_main(rest)

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(Mode.ALL)}")
    return 1
