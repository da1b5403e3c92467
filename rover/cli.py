"""Command-line interface for Rover."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .agents import AGENT_NAMES
from .commands import inspect_command, run_command
from .config import ConfigError, find_project_root, init_config, load_config, merge_config_and_args
from .console import ConsoleReporter


def positive_float_or_zero(value: str) -> float:
    """Argparse type for non-negative float values (used for timeout).

    Raises:
        argparse.ArgumentTypeError: If value is not a number or is negative
    """
    try:
        fval = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid float value: '{value}'")

    if fval < 0:
        raise argparse.ArgumentTypeError(f"timeout must be non-negative, got {fval}")

    return fval


def task_id_type(value: str) -> int:
    try:
        task_id = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid task ID: '{value}'")
    if task_id < 1:
        raise argparse.ArgumentTypeError(f"task ID must be positive, got {task_id}")
    return task_id


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the CLI.

    Log records only reach the console in verbose mode; otherwise user-facing
    output goes through ConsoleReporter alone.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        root_logger.addHandler(console_handler)


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow file."""
    setup_logging(args.verbose)
    reporter = ConsoleReporter(verbose=args.verbose, quiet=args.quiet)

    workflow_path = Path(args.workflow)
    if not workflow_path.is_file():
        print(f"Error: Workflow file does not exist: {workflow_path}", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(run_command(
            workflow_path,
            inputs=args.input or (),
            inputs_json=Path(args.inputs_json) if args.inputs_json else None,
            agent_tool=args.agent,
            agent_model=args.model,
            output_dir=Path(args.output) if args.output else None,
            status_file=Path(args.status_file) if args.status_file else None,
            task_id=args.task_id,
            context_dir=Path(args.context_dir) if args.context_dir else None,
            timeout=args.timeout,
            use_acp=not args.no_acp,
            reporter=reporter,
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        return 130

    return 0 if result.success else 1


def cmd_inspect(args: argparse.Namespace) -> int:
    """Show the status of a task."""
    setup_logging(args.verbose)
    reporter = ConsoleReporter(verbose=args.verbose, quiet=args.quiet)
    result = inspect_command(find_project_root(Path.cwd()), args.task_id, reporter, as_json=args.json)
    return 0 if result.success else 1


def _add_global_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("global options")
    group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging and echo resolved prompts",
    )
    group.add_argument(
        "--quiet",
        action="store_true",
        help="Only show warnings, errors and the final summary",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="rover",
        description="Run AI coding agent workflows step by step",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rover run workflow.yml                          Run a workflow
  rover run workflow.yml --input description=...  Provide a workflow input
  rover run workflow.yml --agent gemini --no-acp  Use gemini, one process per step
  rover inspect 3                                 Show the status of task 3
  rover --init-config                             Create .rover/config.toml
""",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Generate a new .rover/config.toml file with all options commented out",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    run_parser = subparsers.add_parser("run", help="Run a workflow file")
    run_parser.add_argument("workflow", metavar="WORKFLOW", help="Path to the workflow YAML file")
    run_parser.add_argument(
        "--input",
        action="append",
        metavar="KEY=VALUE",
        help="Workflow input (repeatable); overrides --inputs-json",
    )
    run_parser.add_argument(
        "--inputs-json",
        dest="inputs_json",
        metavar="FILE",
        default=None,
        help="JSON file with workflow inputs",
    )
    run_parser.add_argument(
        "--agent",
        type=str.lower,
        choices=AGENT_NAMES,
        default=None,
        help="Default agent tool for steps that don't name one",
    )
    run_parser.add_argument(
        "--model",
        default=None,
        help="Default model for steps that don't name one",
    )
    run_parser.add_argument(
        "--output",
        metavar="DIR",
        default=None,
        help="Existing directory that file outputs are moved into",
    )
    run_parser.add_argument(
        "--status-file",
        dest="status_file",
        metavar="FILE",
        default=None,
        help="Iteration status.json kept up to date during the run",
    )
    run_parser.add_argument(
        "--task-id",
        dest="task_id",
        metavar="ID",
        default=None,
        help="Task ID recorded in the status file (required with --status-file)",
    )
    run_parser.add_argument(
        "--context-dir",
        dest="context_dir",
        metavar="DIR",
        default=None,
        help="Directory with an index.md of context sources injected into prompts",
    )
    run_parser.add_argument(
        "--timeout",
        type=positive_float_or_zero,
        metavar="SEC",
        default=None,
        help="Default timeout per step in seconds, 0 for no limit (default: 1800)",
    )
    run_parser.add_argument(
        "--no-acp",
        dest="no_acp",
        action="store_true",
        help="Run one agent process per step even for tools with an ACP mode",
    )
    _add_global_options(run_parser)
    run_parser.set_defaults(handler=cmd_run)

    inspect_parser = subparsers.add_parser("inspect", help="Show the status of a task")
    inspect_parser.add_argument("task_id", type=task_id_type, metavar="TASK_ID", help="Task ID")
    inspect_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full task document as JSON",
    )
    _add_global_options(inspect_parser)
    inspect_parser.set_defaults(handler=cmd_inspect)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # --init-config doesn't need config loading
    if args.init_config:
        return init_config()

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = load_config()
        args = merge_config_and_args(config, args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return args.handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
