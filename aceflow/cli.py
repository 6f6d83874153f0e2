"""
Command Line Interface for aceflow.

Every subcommand prints one machine-parsable summary line on stdout:

    aceflow: status=<ok|error> command=<name> key=value ...

followed by human-readable detail. The exit code is 0 on success or the
error taxonomy's exit code on failure.
"""

import argparse
import asyncio
import math
import shlex
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

from . import __version__
from .checkpoint import CheckpointManager
from .complexity import CATEGORY_WEIGHTS, DEFAULT_CATEGORY, ProjectDescriptor, score
from .config import RecoveryConfig, load_config
from .errors import AceFlowError, ExitCode, UsageError
from .executor import CancelToken, RetryExecutor
from .ledger import JsonlLedger
from .models import CheckpointTrigger, RetentionPolicy
from .operations import ClassificationHints, CommandOperation
from .timeouts import timeout_schedule
from .utils.logger import get_logger, setup_logging

logger = get_logger("cli")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project-root",
        type=str,
        default=None,
        help="Project root directory (default: current directory)",
    )
    common.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: .ace-flow/config.yaml)",
    )
    common.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    common.add_argument("--quiet", action="store_true", help="Only log warnings and errors")

    parser = argparse.ArgumentParser(
        prog="aceflow",
        description="Adaptive execution and checkpoint recovery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s create --description "before schema change"
  %(prog)s list
  %(prog)s restore cp-20240101T120000000000Z-1a2b
  %(prog)s run --checkpoint --restore-on-failure -- npx ampx sandbox --once
  %(prog)s cleanup --max-age-days 3
        """,
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # List command
    list_parser = subparsers.add_parser("list", parents=[common], help="List checkpoints, newest first")
    list_parser.add_argument(
        "--trigger",
        choices=[t.value for t in CheckpointTrigger],
        default=None,
        help="Only show checkpoints with this trigger",
    )
    list_parser.add_argument("--component", type=str, default=None, help="Only show checkpoints of a component")

    # Create command
    create_parser_ = subparsers.add_parser("create", parents=[common], help="Create a checkpoint")
    create_parser_.add_argument(
        "--component", "-c",
        action="append",
        default=None,
        metavar="NAME[=STATE]",
        help="Component to capture, optionally with its state (repeatable; default: all configured)",
    )
    create_parser_.add_argument("--description", "-d", type=str, default="", help="Free-form description")
    create_parser_.add_argument(
        "--trigger",
        choices=[t.value for t in CheckpointTrigger],
        default=CheckpointTrigger.MANUAL.value,
        help="Checkpoint trigger (default: manual)",
    )

    # Restore command
    restore_parser = subparsers.add_parser("restore", parents=[common], help="Restore a checkpoint")
    restore_parser.add_argument("checkpoint_id", help="Checkpoint id")

    # Cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", parents=[common], help="Prune old automatic checkpoints")
    cleanup_parser.add_argument(
        "--max-age-days",
        type=float,
        default=None,
        help="Delete automatic checkpoints older than this (default: retention_days from config)",
    )
    cleanup_parser.add_argument(
        "--keep",
        type=int,
        default=None,
        help="Keep at most this many automatic checkpoints (default: max_auto_checkpoints from config)",
    )
    cleanup_parser.add_argument(
        "--target",
        action="append",
        default=[],
        metavar="ID",
        help="Also delete this checkpoint, even if manual (repeatable)",
    )

    # Validate command
    validate_parser = subparsers.add_parser("validate", parents=[common], help="Verify checkpoint checksums")
    validate_parser.add_argument("checkpoint_id", nargs="?", default=None, help="Checkpoint id (default: all)")

    # Export command
    export_parser = subparsers.add_parser("export", parents=[common], help="Export a checkpoint as .tar.gz")
    export_parser.add_argument("checkpoint_id", help="Checkpoint id")
    export_parser.add_argument(
        "--output", "-o",
        type=str,
        default=".",
        help="Output file or directory (default: current directory)",
    )

    # Delete command
    delete_parser = subparsers.add_parser("delete", parents=[common], help="Delete a checkpoint")
    delete_parser.add_argument("checkpoint_id", help="Checkpoint id")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a command with adaptive timeouts and retry",
    )
    run_parser.add_argument("--name", "-n", type=str, default=None, help="Operation name (default: the command)")
    run_parser.add_argument(
        "--category",
        choices=sorted(CATEGORY_WEIGHTS),
        default=DEFAULT_CATEGORY,
        help=f"Project category label (default: {DEFAULT_CATEGORY})",
    )
    run_parser.add_argument(
        "--checkpoint",
        action="store_true",
        help="Create an auto-pre-operation checkpoint before running",
    )
    run_parser.add_argument(
        "--restore-on-failure",
        action="store_true",
        help="Restore the pre-operation checkpoint if the operation fails (implies --checkpoint)",
    )
    run_parser.add_argument("--max-retries", type=int, default=None, help="Maximum attempts")
    run_parser.add_argument("--max-seconds", type=float, default=None, help="Timeout ceiling per attempt")
    run_parser.add_argument(
        "--transient-exit-code",
        type=int,
        action="append",
        default=[],
        help="Exit code that signals a retryable failure (repeatable)",
    )
    run_parser.add_argument(
        "--fatal-exit-code",
        type=int,
        action="append",
        default=[],
        help="Exit code that signals a non-retryable failure (repeatable)",
    )
    run_parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Write each attempt's output to a log file in this directory",
    )
    run_parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command to run, after --")

    # Stats command
    stats_parser = subparsers.add_parser("stats", parents=[common], help="Show performance ledger statistics")
    stats_parser.add_argument("--operation", type=str, default=None, help="Only this operation")
    stats_parser.add_argument("--last", type=int, default=None, help="Only the last N records")

    return parser


def _format_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return "nan" if math.isnan(value) else f"{value:.4g}"
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value) or "-"
    return shlex.quote(str(value))


def emit_summary(command: str, status: str = "ok", **fields: Any) -> None:
    """Print the machine-parsable summary line."""
    parts = [f"status={status}", f"command={command}"]
    parts += [f"{key}={_format_value(value)}" for key, value in fields.items()]
    print("aceflow: " + " ".join(parts))


def get_project_root(args) -> Path:
    """Determine the project root."""
    if getattr(args, "project_root", None):
        return Path(args.project_root).resolve()
    return Path.cwd()


def build_config(args, **overrides: Any) -> RecoveryConfig:
    config = load_config(
        get_project_root(args),
        config_path=args.config,
        overrides={"verbose": args.verbose or None, **overrides},
    )
    # verbose may also come from config.yaml or ACEFLOW_VERBOSE
    if config.verbose and not args.verbose and not args.quiet:
        setup_logging(verbose=True)
    return config


def cmd_list(args) -> int:
    """List checkpoints, newest first."""
    manager = CheckpointManager.from_config(build_config(args))
    summaries = manager.list(trigger=args.trigger, component=args.component)

    emit_summary("list", count=len(summaries))
    if not summaries:
        print("No checkpoints found.")
        return 0

    print(f"\n📋 Checkpoints ({len(summaries)})")
    print("─" * 60)
    for summary in summaries:
        print(f"{summary.id}")
        print(f"  Created: {summary.created_at.isoformat(timespec='seconds')}")
        print(f"  Trigger: {summary.trigger.value}")
        print(f"  Components: {', '.join(summary.components)}")
        print(f"  Files: {summary.file_count} ({summary.total_bytes} bytes)")
        if summary.source_revision:
            print(f"  Revision: {summary.source_revision[:12]}")
        if summary.description:
            print(f"  Description: {summary.description}")
    return 0


def _parse_components(values: list[str] | None) -> dict[str, str] | None:
    if not values:
        return None
    states = {}
    for value in values:
        name, _, state = value.partition("=")
        states[name.strip()] = state.strip() or "captured"
    return states


def cmd_create(args) -> int:
    """Create a checkpoint."""
    config = build_config(args)
    manager = CheckpointManager.from_config(config)
    checkpoint = manager.create(
        trigger=CheckpointTrigger(args.trigger),
        component_states=_parse_components(args.component),
        description=args.description,
    )

    emit_summary(
        "create",
        checkpoint=checkpoint.id,
        trigger=checkpoint.trigger.value,
        components=list(checkpoint.component_states),
        files=len(checkpoint.manifest),
        bytes=checkpoint.total_bytes,
    )
    print(f"✅ Created checkpoint {checkpoint.id}")
    print(f"  Files: {len(checkpoint.manifest)} ({checkpoint.total_bytes} bytes)")
    return 0


def cmd_restore(args) -> int:
    """Restore a checkpoint."""
    manager = CheckpointManager.from_config(build_config(args))
    result = manager.restore(args.checkpoint_id)

    emit_summary(
        "restore",
        checkpoint=result.checkpoint_id,
        components=list(result.restored_components),
        files=result.files_restored,
        duration_s=round(result.duration_seconds, 3),
    )
    print(f"✅ Restored {result.checkpoint_id}: {result.files_restored} file(s) written")
    return 0


def cmd_cleanup(args) -> int:
    """Prune automatic checkpoints according to the retention policy."""
    config = build_config(args)
    manager = CheckpointManager.from_config(config)
    max_age = timedelta(days=args.max_age_days) if args.max_age_days is not None else config.checkpoints.retention
    keep = args.keep if args.keep is not None else config.checkpoints.max_auto_checkpoints
    if keep < 1:
        raise UsageError("--keep must be >= 1")

    result = manager.prune(RetentionPolicy(max_age=max_age, max_auto_checkpoints=keep, targets=frozenset(args.target)))

    emit_summary("cleanup", deleted=len(result.deleted), kept=len(result.kept))
    if result.deleted:
        print(f"🧹 Deleted {len(result.deleted)} checkpoint(s):")
        for checkpoint_id in result.deleted:
            print(f"  {checkpoint_id}")
    else:
        print("Nothing to clean up.")
    return 0


def cmd_validate(args) -> int:
    """Validate one checkpoint or all of them."""
    manager = CheckpointManager.from_config(build_config(args))
    if args.checkpoint_id:
        results = [manager.validate(args.checkpoint_id)]
    else:
        results = manager.validate_all()

    invalid = [r for r in results if not r.valid]
    if invalid:
        emit_summary(
            "validate",
            status="error",
            code="checksum_mismatch",
            exit_code=int(ExitCode.CHECKSUM_MISMATCH),
            checked=len(results),
            invalid=len(invalid),
        )
    else:
        emit_summary("validate", checked=len(results), invalid=0)

    for result in results:
        if result.valid:
            print(f"✅ {result.checkpoint_id}: valid")
        else:
            print(f"❌ {result.checkpoint_id}: {len(result.mismatches)} mismatch(es)")
            for path in result.mismatches:
                print(f"    {path}")
    return int(ExitCode.CHECKSUM_MISMATCH) if invalid else 0


def cmd_export(args) -> int:
    """Export a checkpoint."""
    manager = CheckpointManager.from_config(build_config(args))
    destination = manager.export(args.checkpoint_id, Path(args.output).resolve())

    emit_summary("export", checkpoint=args.checkpoint_id, path=str(destination))
    print(f"📦 Exported {args.checkpoint_id} to {destination}")
    return 0


def cmd_delete(args) -> int:
    """Delete a checkpoint."""
    manager = CheckpointManager.from_config(build_config(args))
    manager.delete(args.checkpoint_id)

    emit_summary("delete", checkpoint=args.checkpoint_id)
    print(f"🗑️  Deleted {args.checkpoint_id}")
    return 0


async def run_operation(args) -> int:
    """Score the project, run the command under the retry executor, checkpoint around it."""
    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        raise UsageError("run requires a command after --")

    config = build_config(
        args,
        **{"timeouts.max_retries": args.max_retries, "timeouts.max_seconds": args.max_seconds},
    )
    config.ensure_directories()
    manager = CheckpointManager.from_config(config)
    manager.recover()

    profile = score(ProjectDescriptor.scan(config.project_root, args.category))
    schedule = ", ".join(f"{t:.0f}s" for t in timeout_schedule(profile, config.timeouts))
    logger.info(f"Complexity score {profile.score} ({profile.category}); timeouts: {schedule}")

    checkpoint_id = None
    if args.checkpoint or args.restore_on_failure:
        checkpoint = manager.create(
            trigger=CheckpointTrigger.AUTO_PRE_OPERATION,
            description=f"before {args.name or ' '.join(argv)}",
        )
        checkpoint_id = checkpoint.id
        manager.prune(RetentionPolicy(
            max_age=config.checkpoints.retention,
            max_auto_checkpoints=config.checkpoints.max_auto_checkpoints,
        ))

    operation = CommandOperation(
        argv=argv,
        name=args.name or "",
        cwd=config.project_root,
        hints=ClassificationHints(
            transient_exit_codes=frozenset(args.transient_exit_code),
            fatal_exit_codes=frozenset(args.fatal_exit_code),
        ),
        log_dir=Path(args.log_dir).resolve() if args.log_dir else None,
    )
    executor = RetryExecutor(config.timeouts, JsonlLedger(config.ledger_path))

    # Setup signal handlers
    cancel_token = CancelToken()
    loop = asyncio.get_running_loop()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_cancel, cancel_token, signum)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        record = await executor.execute(operation, profile, cancel_token=cancel_token, checkpoint_id=checkpoint_id)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)

    restored = False
    restore_error = None
    if not record.succeeded and args.restore_on_failure and checkpoint_id:
        logger.warning(f"Operation failed, restoring checkpoint {checkpoint_id}")
        try:
            manager.restore(checkpoint_id)
            restored = True
        except AceFlowError as e:
            logger.error(f"Restore of {checkpoint_id} failed: {e.message}")
            restore_error = e

    error = record.error()
    fields = {
        "operation": record.operation_name,
        "outcome": record.final_outcome.value,
        "attempts": len(record.attempts),
        "duration_s": round(record.total_duration_seconds, 3),
        "score": profile.score,
        "checkpoint": checkpoint_id,
        "restored": str(restored).lower(),
        "restore_error": restore_error.code if restore_error else None,
    }
    if error is None:
        emit_summary("run", **fields)
    else:
        emit_summary("run", status="error", code=error.code, exit_code=int(error.exit_code), **fields)

    print(f"\n{'✅' if record.succeeded else '❌'} {record.operation_name}: {record.final_outcome.value}")
    for attempt in record.attempts:
        line = (
            f"  #{attempt.attempt_index} {attempt.outcome.value} "
            f"({attempt.duration_seconds:.1f}s of {attempt.timeout_seconds:.0f}s)"
        )
        if attempt.error:
            line += f": {attempt.error}"
        print(line)
    if error is not None:
        print(f"  {error.message}")
    if restore_error is not None:
        print(f"  Restore failed: {restore_error.message}")
    return int(error.exit_code) if error is not None else 0


def _request_cancel(cancel_token: CancelToken, signum: int) -> None:
    logger.warning(f"Received signal {signum}, cancelling...")
    cancel_token.cancel(f"signal {signum}")


def cmd_stats(args) -> int:
    """Show performance ledger statistics."""
    config = build_config(args)
    ledger = JsonlLedger(config.ledger_path)
    window = {"operation": args.operation, "last": args.last}
    rate = ledger.success_rate(**window)
    health = ledger.health(**window)

    emit_summary("stats", records=len(ledger), success_rate=rate, health=health.value)
    if math.isnan(rate):
        print("No completed operations recorded yet.")
        return 0

    print(f"\n📊 Success rate: {rate:.1%} ({health.value})")
    print("─" * 60)
    for stats in ledger.summary():
        if args.operation and stats.operation_name != args.operation:
            continue
        op_rate = "n/a" if math.isnan(stats.success_rate) else f"{stats.success_rate:.1%}"
        print(f"{stats.operation_name}")
        print(f"  Runs: {stats.total} ({stats.succeeded} ok, {stats.failed} failed, {stats.cancelled} cancelled)")
        print(f"  Success rate: {op_rate}")
        print(f"  Avg attempts: {stats.average_attempts:.2f}, avg duration: {stats.average_duration_seconds:.1f}s")
    return 0


COMMANDS = {
    "list": cmd_list,
    "create": cmd_create,
    "restore": cmd_restore,
    "cleanup": cmd_cleanup,
    "validate": cmd_validate,
    "export": cmd_export,
    "delete": cmd_delete,
    "stats": cmd_stats,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return int(ExitCode.USAGE_ERROR)

    setup_logging(verbose=args.verbose, quiet=args.quiet)

    try:
        if args.command == "run":
            return asyncio.run(run_operation(args))
        return COMMANDS[args.command](args)
    except AceFlowError as e:
        emit_summary(args.command, status="error", code=e.code, exit_code=int(e.exit_code))
        print(f"❌ {e.message}", file=sys.stderr)
        return int(e.exit_code)
    except OSError as e:
        logger.error(f"{args.command} failed: {e}")
        emit_summary(args.command, status="error", code="os_error", exit_code=int(ExitCode.GENERAL_ERROR))
        return int(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    sys.exit(main())
