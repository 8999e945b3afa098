#!/usr/bin/env python
"""
Loop Warden CLI - Inspect, recover and approve supervised loops.

Usage:
    loopwarden status [--limit N] [--project-dir DIR] [--loop-id ID]
    loopwarden report LOOP_ID [--project-dir DIR]
    loopwarden recover [--dry-run] [--project-dir DIR] [--loop-id ID]
    loopwarden recovered [--project-dir DIR] [--loop-id ID]
    loopwarden resume LOOP_ID --reason TEXT [--project-dir DIR]
    loopwarden abort [--project-dir DIR] [--loop-id ID]
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv
from rich.text import Text

from loopwarden.config import OverseerConfig
from loopwarden.errors import LoopWardenError
from loopwarden.models import LoopStatus
from loopwarden.output import (
    console,
    create_table,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_markdown,
    print_muted,
    print_panel,
    print_subheader,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    status_markup,
)
from loopwarden.overseer import Overseer
from loopwarden.recovery import CrashReport, RecoveryEngine, RecoveryStrategy, create_recovery_engine
from loopwarden.state_manager import StateManager


def _state_manager(args: argparse.Namespace) -> StateManager:
    return StateManager(args.project_dir, loop_id=args.loop_id)


def _overseer_storage(args: argparse.Namespace, config: OverseerConfig) -> Path:
    storage = Path(config.storage_dir)
    return storage if storage.is_absolute() else args.project_dir / storage


def _print_strategy(strategy: RecoveryStrategy) -> None:
    print_key_value_table({
        "Strategy": strategy.type.value,
        "Action": strategy.action,
    }, title="Recovery Strategy")
    console.print()
    print_subheader("Resumption Prompt")
    print_panel(Text(strategy.prompt), border_style="lw.info")


def cmd_status(args: argparse.Namespace) -> int:
    """Show the persisted loop state."""
    manager = _state_manager(args)
    if not manager.exists():
        print_info(f"No loop state found in {manager.state_dir}")
        return 1

    state = manager.load()
    engine = RecoveryEngine(args.project_dir, state_manager=manager)

    if state.current_pid is None:
        pid = "none"
    elif engine.is_process_alive(state.current_pid):
        pid = f"{state.current_pid} (alive)"
    else:
        pid = f"{state.current_pid} (not running)"

    print_header(f"Loop: {state.loop_id}")
    print_key_value_table({
        "Objective": state.objective,
        "Completion Criteria": state.completion_criteria,
        "Status": status_markup(state.status.value),
        "Iteration": f"{state.current_iteration}/{state.max_iterations}",
        "Worker PID": pid,
        "Files Modified": len(state.files_modified),
        "Started": state.start_time,
        "Last Update": state.last_update,
    })

    if state.iterations:
        console.print()
        table = create_table(
            title="Recent Iterations",
            columns=["#", "Completion", "Failure Class", "Tests", "Continue"],
        )
        for record in state.iterations[-args.limit:]:
            analysis = record.analysis
            if analysis.tests_passing is None:
                tests = "-"
            else:
                tests = "pass" if analysis.tests_passing else "fail"
            table.add_row(
                str(record.number),
                f"{analysis.completion_percentage:g}%",
                analysis.failure_class or "-",
                tests,
                "yes" if analysis.should_continue else "no",
            )
        print_table(table)

    return 0


def cmd_report(args: argparse.Namespace) -> int:
    """Render the overseer report for a loop."""
    config = OverseerConfig.load(args.project_dir)
    overseer = Overseer.load(args.loop, _overseer_storage(args, config), config=config)
    print_markdown(overseer.generate_report())
    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    """Detect a crashed loop and prepare it for resumption."""
    engine = create_recovery_engine(args.project_dir, loop_id=args.loop_id)

    if args.dry_run:
        report: CrashReport = engine.detect_crash()
        if not report.crashed:
            print_success("No crash detected")
            return 0
        print_warning(f"Crash detected at {report.last_checkpoint} (dry run, state unchanged)")
        _print_strategy(report.recovery_strategy)
        return 0

    context = engine.recover()
    if context is None:
        print_success("No crash detected")
        return 0

    print_success(f"Loop {context.state.loop_id} marked {context.state.status.value}")
    _print_strategy(context.strategy)
    console.print()
    print_muted("Run `loopwarden recovered` once the driver has resumed the loop.")
    return 0


def cmd_recovered(args: argparse.Namespace) -> int:
    """Mark a recovering loop as running again."""
    engine = create_recovery_engine(args.project_dir, loop_id=args.loop_id)
    if engine.mark_recovered():
        print_success("Loop is running again")
        return 0
    print_warning("Loop is not recovering; nothing to do")
    return 1


def cmd_resume(args: argparse.Namespace) -> int:
    """Approve a paused loop to continue."""
    config = OverseerConfig.load(args.project_dir)
    overseer = Overseer.load(args.loop, _overseer_storage(args, config), config=config)

    if not overseer.resume(args.reason):
        print_warning(f"Loop {args.loop} is not paused")
        return 1

    # A per-loop state lives under the resumed loop's id unless --loop-id says otherwise
    manager = StateManager(args.project_dir, loop_id=args.loop_id or args.loop)
    if not manager.exists():
        manager = _state_manager(args)
    if manager.exists() and manager.load().status is LoopStatus.PAUSED:
        manager.set_status(LoopStatus.RUNNING)

    print_success(f"Loop {args.loop} resumed: {args.reason}")
    return 0


def cmd_abort(args: argparse.Namespace) -> int:
    """Mark the loop aborted. Its data stays on disk."""
    manager = _state_manager(args)
    if not manager.exists():
        print_info(f"No loop state found in {manager.state_dir}")
        return 1
    manager.clear()
    print_success("Loop marked aborted")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopwarden",
        description="Inspect, recover and approve supervised autonomous loops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory containing the .loopwarden state (default: current dir)",
    )
    parser.add_argument(
        "--loop-id",
        default=None,
        help="Loop state to operate on (default: the project's default loop)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    status_parser = subparsers.add_parser("status", help="Show persisted loop state")
    status_parser.add_argument(
        "--limit", "-n", type=int, default=5, help="Recent iterations to show (default: 5)"
    )

    report_parser = subparsers.add_parser("report", help="Show the overseer report for a loop")
    report_parser.add_argument("loop", metavar="LOOP_ID", help="Loop identifier")

    recover_parser = subparsers.add_parser("recover", help="Detect a crash and prepare recovery")
    recover_parser.add_argument("--dry-run", action="store_true", help="Only report, do not change state")

    subparsers.add_parser("recovered", help="Mark recovery complete")

    resume_parser = subparsers.add_parser("resume", help="Approve a paused loop")
    resume_parser.add_argument("loop", metavar="LOOP_ID", help="Loop identifier")
    resume_parser.add_argument("--reason", "-r", required=True, help="Why resuming is approved")

    subparsers.add_parser("abort", help="Mark the loop aborted")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        print_banner()
        console.print()
        parser.print_help()
        return 1

    commands = {
        "status": cmd_status,
        "report": cmd_report,
        "recover": cmd_recover,
        "recovered": cmd_recovered,
        "resume": cmd_resume,
        "abort": cmd_abort,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except LoopWardenError as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
