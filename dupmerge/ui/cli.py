"""Command-line interface for DupMerge."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ..batch.job_state import JobStatus
from ..batch.orchestrator import BatchOrchestrator
from ..config.loader import load_config
from ..core.errors import DupMergeError
from ..core.record import CandidateRecord
from ..repository.sqlite_adapter import SqliteRepository


def print_job(state, show_errors: bool = True) -> None:
    """Print a job summary.

    Args:
        state: JobRunState to print
        show_errors: Also list errors and failed groups
    """
    print("\n" + "=" * 60)
    print(state)
    print(f"  Pages processed: {state.pages_processed}")
    if state.cursor:
        print(f"  Cursor: {state.cursor}")

    if show_errors and state.errors:
        print()
        print("Errors:")
        for error in state.errors:
            print(f"  - {error}")
    if show_errors and state.failed_group_ids:
        print(f"Failed groups: {', '.join(state.failed_group_ids)}")
    print("=" * 60 + "\n")


def run_command(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for a completed job, 1 otherwise)
    """
    if not Path(args.config).exists():
        print(f"Error: File not found: {args.config}", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config)
        with SqliteRepository(args.database) as repository:
            repository.save_config(config)
            orchestrator = BatchOrchestrator(repository)

            job_id = orchestrator.start_job(
                config.config_id,
                is_dry_run=args.dry_run,
                batch_size=args.batch_size,
            )
            print(f"Started job {job_id}")
            state = orchestrator.run_job(job_id)

            if state.is_dry_run:
                plans = orchestrator.get_dry_run_plans(job_id)
                print(f"\nWould merge {len(plans)} groups:")
                for plan in plans:
                    print(plan)

        print_job(state)
        return 0 if state.status == JobStatus.COMPLETED else 1

    except DupMergeError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def status_command(args: argparse.Namespace) -> int:
    """Execute the status command."""
    if not Path(args.database).exists():
        print(f"Error: File not found: {args.database}", file=sys.stderr)
        return 1

    with SqliteRepository(args.database, audit=False) as repository:
        state = repository.load_job_state(args.job_id)

    if state is None:
        print(f"Error: Unknown job: {args.job_id}", file=sys.stderr)
        return 1

    print_job(state)
    return 0


def import_command(args: argparse.Namespace) -> int:
    """Execute the import command.

    The file holds a JSON list of records, each with record_id, created_at,
    fields and optionally last_modified.
    """
    filepath = Path(args.file)
    if not filepath.exists():
        print(f"Error: File not found: {filepath}", file=sys.stderr)
        return 1

    try:
        with open(filepath, encoding='utf-8') as f:
            data = json.load(f)
        records = [CandidateRecord.from_dict(item) for item in data]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        print(f"Error reading records: {e}", file=sys.stderr)
        return 1

    with SqliteRepository(args.database, audit=False) as repository:
        count = repository.import_records(args.object_type, records)
        total = repository.count_records(args.object_type)

    print(f"Imported {count} {args.object_type} records ({total} total)")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog='dupmerge',
        description='Find and merge duplicate records in batches.',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s 0.1.0'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        help='Available commands'
    )

    # Run command
    run_parser = subparsers.add_parser(
        'run',
        help='Run a deduplication job'
    )
    run_parser.add_argument(
        'database',
        help='Path to the record database'
    )
    run_parser.add_argument(
        '-c', '--config',
        required=True,
        help='Path to the YAML job configuration'
    )
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Resolve merge plans without applying them'
    )
    run_parser.add_argument(
        '-b', '--batch-size',
        type=int,
        default=None,
        help='Records per page (default: from the configuration)'
    )
    run_parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        default=argparse.SUPPRESS,
        help='Enable verbose output'
    )

    # Status command
    status_parser = subparsers.add_parser(
        'status',
        help='Show the status of a job'
    )
    status_parser.add_argument(
        'database',
        help='Path to the record database'
    )
    status_parser.add_argument(
        'job_id',
        help='Job id'
    )

    # Import command
    import_parser = subparsers.add_parser(
        'import',
        help='Import records from a JSON file'
    )
    import_parser.add_argument(
        'database',
        help='Path to the record database'
    )
    import_parser.add_argument(
        'object_type',
        help='Object type to file the records under'
    )
    import_parser.add_argument(
        'file',
        help='Path to a JSON list of records'
    )

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # If no command specified, print help
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command == 'run':
        return run_command(args)
    elif args.command == 'status':
        return status_command(args)
    elif args.command == 'import':
        return import_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
