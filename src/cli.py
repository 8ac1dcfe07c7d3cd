#!/usr/bin/env python3
"""CLI entry point for stackdriver.

Noun-action subcommands:
- stack: Stack lifecycle (plan/apply/destroy/validate/output)
- preflight: Check configuration, state directory and backend
- config: Show the effective engine configuration
"""

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path

from config import ConfigError, describe, load_config
from validation import format_preflight_results, run_preflight_checks

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (plan/apply/destroy/validate/output)",
    "preflight": "Check configuration, state directory and backend",
    "config": "Show the effective engine configuration",
}

STACK_ACTIONS = {
    "plan": "Show the operations an apply would perform",
    "apply": "Converge infrastructure to the stack declaration",
    "destroy": "Delete every resource recorded for a stack",
    "validate": "Validate stack structure and references",
    "output": "Show resolved stack outputs",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'web-tier'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stackdriver stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'stackdriver stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from stack_opr.cli import plan_main
        rc: int = plan_main(rest)
        return rc
    if action == "apply":
        from stack_opr.cli import apply_main
        rc = apply_main(rest)
        return rc
    if action == "destroy":
        from stack_opr.cli import destroy_main
        rc = destroy_main(rest)
        return rc
    if action == "validate":
        from stack_opr.cli import validate_main
        rc = validate_main(rest)
        return rc
    if action == "output":
        from stack_opr.cli import output_main
        rc = output_main(rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(STACK_ACTIONS)}")
    return 1


def preflight_main(argv: list) -> int:
    """Handle 'preflight' noun."""
    parser = argparse.ArgumentParser(
        prog='stackdriver preflight',
        description='Check configuration, state directory and backend',
    )
    parser.add_argument('--config', '-c', help='Engine config file')
    parser.add_argument('--json-output', action='store_true', help='Output JSON')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    success, results = run_preflight_checks(config)
    if args.json_output:
        print(json.dumps({'success': success, 'results': results}, indent=2))
    else:
        print(format_preflight_results(results))
    return 0 if success else 1


def config_main(argv: list) -> int:
    """Handle 'config' noun: print the effective configuration."""
    parser = argparse.ArgumentParser(
        prog='stackdriver config',
        description='Show the effective engine configuration',
    )
    parser.add_argument('--config', '-c', help='Engine config file')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(describe(config), indent=2))
    return 0


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler."""
    if noun == "stack":
        return dispatch_stack(argv)
    if noun == "preflight":
        return preflight_main(argv)
    if noun == "config":
        return config_main(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stackdriver {get_version()}")
    print()
    print("Usage: stackdriver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stackdriver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stackdriver stack validate -f stacks/web-tier.yaml")
    print("  stackdriver stack plan -S web-tier")
    print("  stackdriver stack apply -S web-tier --expect-fingerprint <fp>")
    print("  stackdriver stack output -S web-tier load_balancer_dns")
    print("  stackdriver preflight")


def main(argv=None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"stackdriver {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
