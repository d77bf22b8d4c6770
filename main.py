#!/usr/bin/env python3
"""matchloop - automated matching decompilation.

Usage:
    python main.py run                                   # uses ./matchloop.yaml
    python main.py run --config cfg.yaml --retries 10 --verbose
    python main.py list-plugins
    python main.py diff current.o target.o FunctionName --target gba
"""

import argparse
import logging
import os
import sys

from config.defaults import DEFAULTS
from config.loader import ConfigValidationError, get_default_config_path, load_config
from config.targets import PLATFORM_TARGETS
from core.asm_diff import AssemblyDiffEvaluator, format_report
from core.errors import InfrastructureError, SymbolNotFoundError
from core.objdump import ObjdumpBackend
from plugins.registry import build_orchestrator, list_plugins
from utils.prompt_loader import load_prompts
from utils.report import save_results


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def print_event(event):
    """Console progress for the events a user cares about."""
    kind = event["type"]
    if kind == "prompt-start":
        print(f"\n[{event['index']}/{event['total']}] {event['promptPath']} ({event['functionName']})")
    elif kind == "attempt-complete":
        status = "match" if event["success"] else "no match"
        diff = event.get("differenceCount")
        suffix = f", {diff} differences" if diff is not None else ""
        print(f"  attempt {event['attemptNumber']}: {status}{suffix}")
    elif kind == "background-task-start":
        print(f"  background {event['taskId']} started (attempt {event['triggeredByAttempt']})")
    elif kind == "background-task-complete":
        print(f"  background {event['taskId']}: {event['status']}")
    elif kind == "prompt-complete":
        outcome = f"matched by {event['matchSource']}" if event["success"] else "not matched"
        print(f"  => {outcome}")


def cmd_run(args):
    config_path = args.config or get_default_config_path()
    try:
        config_file = load_config(config_path)
        if args.retries:
            config_file.global_.max_retries = min(args.retries, DEFAULTS["hard_max_retries"])
        if args.prompts:
            config_file.global_.prompts_dir = args.prompts
        if args.output:
            config_file.global_.output_dir = args.output
        orchestrator = build_orchestrator(config_file, event_handler=print_event)
    except ConfigValidationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    pipeline = config_file.global_
    backend = ObjdumpBackend(pipeline.target)
    try:
        tasks, errors = load_prompts(pipeline.prompts_dir, backend)
    except (InfrastructureError, OSError) as e:
        print(f"Could not load prompts: {e}", file=sys.stderr)
        return 2

    for error in errors:
        print(f"  [SKIP] {error}")
    if not tasks:
        print("No prompts to run.")
        return 1

    print(f"Running {len(tasks)} prompt(s), up to {orchestrator.max_retries} attempts each")
    try:
        results = orchestrator.run_benchmark(tasks)
    except InfrastructureError as e:
        print(f"Infrastructure error, run aborted: {e}", file=sys.stderr)
        return 3
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    finally:
        orchestrator.coordinator.shutdown()

    summary = results.summary
    path = save_results(results, pipeline.output_dir)
    print(f"\nMatched {summary.successful_prompts}/{summary.total_prompts} "
          f"({summary.success_rate:.1f}%), avg {summary.avg_attempts:.1f} attempts")
    print(f"Results:  {path}")
    return 0


def cmd_list_plugins(args):
    print("Available plugins:")
    for plugin_id, description in list_plugins():
        print(f"  {plugin_id:16s} - {description}")
    return 0


def cmd_diff(args):
    try:
        backend = ObjdumpBackend(args.target)
        current, target = backend.diff_files(args.current, args.target_object)
        report = AssemblyDiffEvaluator().evaluate(current, target, args.symbol)
    except SymbolNotFoundError as e:
        print(e.feedback())
        return 1
    except (InfrastructureError, FileNotFoundError, RuntimeError) as e:
        print(f"Diff failed: {e}", file=sys.stderr)
        return 2

    print(format_report(report))
    return 0 if report.is_match else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="matchloop",
        description="Generate C code that compiles to the exact target assembly",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the pipeline over every prompt")
    run_parser.add_argument("--config", help=f"Config file (default: ./{DEFAULTS['config_file']})")
    run_parser.add_argument("--prompts", help="Override the prompts directory")
    run_parser.add_argument("--retries", type=int, help="Override max retries per prompt")
    run_parser.add_argument("--output", help="Override the results directory")
    run_parser.add_argument("--verbose", action="store_true", default=argparse.SUPPRESS,
                            help="Debug logging")

    subparsers.add_parser("list-plugins", help="List available plugins")

    diff_parser = subparsers.add_parser("diff", help="Compare one function across two object files")
    diff_parser.add_argument("current", help="Compiled object file")
    diff_parser.add_argument("target_object", help="Target object file")
    diff_parser.add_argument("symbol", help="Function name")
    diff_parser.add_argument("--target", default=DEFAULTS["target"], choices=PLATFORM_TARGETS,
                             help=f"Platform target (default: {DEFAULTS['target']})")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "run":
        return cmd_run(args)
    if args.command == "list-plugins":
        return cmd_list_plugins(args)
    if args.command == "diff":
        if not os.path.exists(args.current) or not os.path.exists(args.target_object):
            print("Both object files must exist.", file=sys.stderr)
            return 2
        return cmd_diff(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
