"""CLI handlers for stack verb commands (plan, apply, destroy, validate, output).

Usage:
    stackdriver stack plan -S <stack> [--refresh] [--json-output] [--verbose]
    stackdriver stack apply -S <stack> [--dry-run] [--expect-fingerprint FP] [--report-dir DIR]
    stackdriver stack destroy -S <stack> [--dry-run] [--yes]
    stackdriver stack validate -S <stack> [--verbose]
    stackdriver stack output -S <stack> [--json-output]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from backends import create_backend
from config import ConfigError, EngineConfig, load_config
from reporting.report import ApplyReport
from stack import Stack, load_stack
from stack_opr.engine import StackEngine
from stack_opr.errors import EngineError, ValidationError
from stack_opr.executor import RUN_INTERRUPTED, ApplyResult
from stack_opr.graph import DependencyGraph
from stack_opr.planner import Plan
from stack_opr.reconciler import CREATE, DELETE, NOOP, REPLACE, UPDATE
from validation import validate_readiness

logger = logging.getLogger(__name__)

ACTION_SYMBOLS = {
    CREATE: '+',
    UPDATE: '~',
    REPLACE: '-/+',
    DELETE: '-',
    NOOP: ' ',
}

# Exit code for an interrupted apply (128 + SIGINT)
EXIT_INTERRUPTED = 130


def _common_parser(verb: str, description: Optional[str] = None) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackdriver stack {verb}',
        description=description or f'{verb.capitalize()} a stack',
    )
    parser.add_argument(
        '--stack', '-S',
        help='Stack name from the stacks directory',
    )
    parser.add_argument(
        '--stack-file', '-f',
        help='Path to stack file (YAML or JSON)',
    )
    parser.add_argument(
        '--stack-json',
        help='Inline stack JSON',
    )
    parser.add_argument(
        '--stacks-dir',
        help='Directory holding named stacks (default: ./stacks)',
    )
    parser.add_argument(
        '--config', '-c',
        help='Engine config file (default: $STACKDRIVER_CONFIG or ./stackdriver.yaml)',
    )
    parser.add_argument(
        '--backend',
        choices=('memory', 'http'),
        help='Override the configured backend type',
    )
    parser.add_argument(
        '--state-dir',
        help='Override the configured state directory',
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


def _add_apply_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the plan without executing it',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    parser.add_argument(
        '--expect-fingerprint',
        help='Refuse to apply unless the plan fingerprint matches (from a reviewed plan)',
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Write JSON and Markdown run reports to this directory',
    )
    parser.add_argument(
        '--max-concurrency',
        type=int,
        help='Override max operations in flight',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)


def _load_stack(args) -> Stack:
    """Load the stack named by args.

    Raises:
        SystemExit: If no source is given or loading fails
    """
    if not args.stack and not args.stack_file and not args.stack_json:
        print("Error: specify a stack with -S, --stack-file, or --stack-json", file=sys.stderr)
        sys.exit(1)
    try:
        return load_stack(
            name=args.stack,
            file_path=args.stack_file,
            json_str=args.stack_json,
            stacks_dir=args.stacks_dir,
        )
    except ConfigError as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(1)


def _load_config(args) -> EngineConfig:
    """Load engine config and apply command-line overrides.

    Raises:
        SystemExit: On config errors
    """
    try:
        config = load_config(args.config)
        if args.backend:
            config.backend.type = args.backend
            if args.backend == 'http' and not config.backend.endpoint:
                raise ConfigError("Backend type 'http' requires 'endpoint'")
        if args.state_dir:
            config.state_dir = Path(args.state_dir)
        if getattr(args, 'max_concurrency', None) is not None:
            if args.max_concurrency < 1:
                raise ConfigError(f"max_concurrency must be >= 1, got {args.max_concurrency}")
            config.max_concurrency = args.max_concurrency
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return config


def _build_engine(config: EngineConfig) -> StackEngine:
    try:
        backend = create_backend(config.backend)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    return StackEngine.from_config(config, backend)


def _print_errors(header: str, errors: list[str]) -> None:
    print(header, file=sys.stderr)
    for error in errors:
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            print(f"{prefix}{line}", file=sys.stderr)


def _report_engine_error(e: EngineError) -> None:
    if isinstance(e, ValidationError):
        _print_errors(f"Error: stack has {len(e.violations)} validation error(s):", e.violations)
    else:
        print(f"Error: {e}", file=sys.stderr)


def _run_preflight(args, config: EngineConfig) -> Optional[int]:
    """Run preflight checks for mutating verbs.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or args.dry_run:
        return None

    errors = validate_readiness(config)
    if errors:
        _print_errors("\nPre-flight validation failed:", errors)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


def format_plan(plan: Plan, show_noop: bool = False) -> str:
    """Human-readable plan listing."""
    lines = [f"Plan for stack '{plan.stack_id}':"]
    for op in plan.operations:
        if op.action == NOOP and not show_noop:
            continue
        symbol = ACTION_SYMBOLS.get(op.action, '?')
        line = f"  {symbol:>3} {op.action:<8} {op.node_id} ({op.resource_type})"
        if op.reason:
            line += f"  # {op.reason}"
        lines.append(line)
    summary = plan.summary()
    lines.append("")
    lines.append(
        f"{summary[CREATE]} to create, {summary[UPDATE]} to update, "
        f"{summary[REPLACE]} to replace, {summary[DELETE]} to delete, "
        f"{summary[NOOP]} unchanged"
    )
    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the declaration.")
    else:
        lines.append(f"Fingerprint: {plan.fingerprint}")
    return '\n'.join(lines)


def _emit_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_result(result: ApplyResult) -> None:
    print(f"\nStack '{result.stack_id}': {result.status} ({result.duration:.1f}s)")
    failures = result.failures
    if failures:
        print("Failures:")
        for line in failures:
            print(f"  ✗ {line}")
    if result.outputs:
        print("Outputs:")
        for name, value in result.outputs.items():
            print(f"  {name} = {value if value is not None else '(unresolved)'}")


def _exit_code(result: ApplyResult) -> int:
    if result.status == RUN_INTERRUPTED:
        return EXIT_INTERRUPTED
    return 0 if result.success else 1


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Show the operations an apply would perform')
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Read live attributes and fail on out-of-band drift',
    )
    parser.add_argument(
        '--show-unchanged',
        action='store_true',
        help='List unchanged resources too',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load_stack(args)
    engine = _build_engine(_load_config(args))

    try:
        plan = engine.plan(stack, refresh=args.refresh)
    except EngineError as e:
        _report_engine_error(e)
        return 1

    if args.json_output:
        _emit_json(plan.to_dict())
    else:
        print(format_plan(plan, show_noop=args.show_unchanged or args.verbose))
    return 0


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', 'Converge infrastructure to the stack declaration')
    _add_apply_options(parser)
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Read live attributes and fail on out-of-band drift',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load_stack(args)
    config = _load_config(args)

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    engine = _build_engine(config)

    if args.dry_run:
        try:
            plan = engine.plan(stack, refresh=args.refresh)
        except EngineError as e:
            _report_engine_error(e)
            return 1
        if args.json_output:
            _emit_json({'verb': 'apply', 'dry_run': True, 'plan': plan.to_dict()})
        else:
            print(format_plan(plan))
        return 0

    logger.info(f"Applying stack '{stack.name}' via {config.backend.type} backend")
    report = ApplyReport(stack.name, args.report_dir, verb='apply') if args.report_dir else None
    if report:
        report.start(fingerprint=args.expect_fingerprint or '')

    try:
        result = engine.apply(
            stack,
            refresh=args.refresh,
            expected_fingerprint=args.expect_fingerprint,
        )
    except EngineError as e:
        _report_engine_error(e)
        return 1

    if report:
        for path in report.finish(result):
            logger.info(f"Report written: {path}")

    if args.json_output:
        _emit_json({'verb': 'apply', **result.to_dict()})
    else:
        _print_result(result)
    return _exit_code(result)


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy', 'Delete every resource recorded for a stack')
    _add_apply_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load_stack(args)
    config = _load_config(args)

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    engine = _build_engine(config)
    plan = engine.plan_destroy(stack.name)

    if args.dry_run:
        if args.json_output:
            _emit_json({'verb': 'destroy', 'dry_run': True, 'plan': plan.to_dict()})
        else:
            print(format_plan(plan))
        return 0

    if not plan.has_changes:
        print(f"Nothing to destroy for stack '{stack.name}'.")
        return 0

    # Confirmation for destructive operation
    if not args.yes:
        print(f"\nWARNING: This will destroy {len(plan)} resource(s) in stack '{stack.name}'.")
        print(f"Backend: {config.backend.type} {config.backend.endpoint}".rstrip())
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{stack.name}'")
    report = ApplyReport(stack.name, args.report_dir, verb='destroy') if args.report_dir else None
    if report:
        report.start(fingerprint=plan.fingerprint)

    try:
        result = engine.destroy(stack.name, expected_fingerprint=args.expect_fingerprint)
    except EngineError as e:
        _report_engine_error(e)
        return 1

    if report:
        for path in report.finish(result):
            logger.info(f"Report written: {path}")

    if args.json_output:
        _emit_json({'verb': 'destroy', **result.to_dict()})
    else:
        _print_result(result)
    return _exit_code(result)


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Checks the declaration without touching state or the backend:
    - Unique identifiers, known types, required attributes
    - References resolve and form no cycle
    """
    parser = _common_parser('validate', 'Validate stack structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load_stack(args)

    try:
        stack.validate()
        graph = DependencyGraph(stack.nodes)
    except ValidationError as e:
        if args.json_output:
            _emit_json({'stack': stack.name, 'valid': False, 'errors': e.violations})
        else:
            _print_errors(f"Stack '{stack.name}' has {len(e.violations)} validation error(s):",
                          e.violations)
        return 1
    except EngineError as e:
        if args.json_output:
            _emit_json({'stack': stack.name, 'valid': False, 'errors': [e.message]})
        else:
            _print_errors(f"Stack '{stack.name}' is invalid:", [e.message])
        return 1

    for node in graph.topological_order():
        deps = graph.dependencies_of(node.id)
        logger.debug(f"{node.id} ({node.type}) <- {', '.join(deps) if deps else '-'}")

    if args.json_output:
        _emit_json({
            'stack': stack.name,
            'valid': True,
            'nodes': len(graph),
            'order': [node.id for node in graph.topological_order()],
        })
    else:
        count = len(graph)
        print(f"Stack '{stack.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return 0


def output_main(argv: list) -> int:
    """Handle 'stack output' verb."""
    parser = _common_parser('output', 'Show resolved stack outputs from state')
    parser.add_argument(
        'name',
        nargs='?',
        help='Print only this output value',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load_stack(args)
    engine = _build_engine(_load_config(args))
    outputs = engine.outputs(stack)

    if args.name:
        if args.name not in outputs:
            print(f"Error: stack '{stack.name}' has no output '{args.name}'", file=sys.stderr)
            return 1
        value = outputs[args.name]
        if value is None:
            print(f"Error: output '{args.name}' is not resolved yet (apply the stack first)",
                  file=sys.stderr)
            return 1
        print(json.dumps(value) if args.json_output else value)
        return 0

    if args.json_output:
        _emit_json({'stack': stack.name, 'outputs': outputs})
    else:
        for name, value in outputs.items():
            print(f"{name} = {value if value is not None else '(unresolved)'}")
    return 0
