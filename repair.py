#!/usr/bin/env python3
"""
Series linkage repair job.

Finds comics whose ComicInfo series name disagrees with the series they are
linked to and fixes them. Safe to run repeatedly (e.g. from cron): a second
run finds nothing left to repair.

Usage:
    python repair.py                    # Relink every mismatched file from its metadata
    python repair.py --list             # Only list mismatched files
    python repair.py --file-id 12 34    # Repair specific files
    python repair.py --sync-metadata --file-id 12
                                        # Rewrite the files' series name from their linked series
"""

import argparse
import sys
from datetime import datetime
from app_logging import app_logger
from database import init_db
from linkage_repair import (
    find_mismatched_series_files,
    repair_series_linkages,
    batch_sync_file_metadata_to_series,
)


def list_mismatches():
    """Print mismatched files without changing anything."""
    mismatched = find_mismatched_series_files()
    if not mismatched:
        print("No mismatched series linkages found")
        return True

    for item in mismatched:
        linked = item['linked_series_name'] or '(unlinked)'
        print(f"{item['file_id']}\t{item['file_name']}\tmetadata: {item['metadata_series']}\tlinked: {linked}")
    print(f"{len(mismatched)} mismatched file(s)")
    return True


def run_repair(file_ids=None):
    def report(current, total, description):
        app_logger.info(f"[{current}/{total}] {description}")

    result = repair_series_linkages(file_ids=file_ids, on_progress=report)

    app_logger.info(
        f"Repair complete: {result.repaired} repaired, {result.new_series_created} series created, "
        f"{len(result.errors)} errors (of {result.total_mismatched} mismatched)"
    )
    for error in result.errors:
        app_logger.warning(f"  Failed: {error}")

    return not result.errors


def run_sync_metadata(file_ids):
    if not file_ids:
        app_logger.error("--sync-metadata needs at least one --file-id")
        return False

    result = batch_sync_file_metadata_to_series(file_ids)
    for error in result['errors']:
        app_logger.warning(f"  Failed: {error}")
    return not result['errors']


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Repair comic file to series linkages',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        '--list', action='store_true',
        help='List mismatched files and exit without changing anything'
    )
    parser.add_argument(
        '--file-id', type=int, nargs='+', dest='file_ids',
        help='Only process these file IDs'
    )
    parser.add_argument(
        '--sync-metadata', action='store_true',
        help="Rewrite the files' metadata series name from their linked series instead of relinking"
    )

    args = parser.parse_args(argv)

    app_logger.info(f"Series linkage repair started at {datetime.now().isoformat()}")
    init_db()

    if args.list:
        success = list_mismatches()
    elif args.sync_metadata:
        success = run_sync_metadata(args.file_ids)
    else:
        success = run_repair(args.file_ids)

    return 0 if success else 1


if __name__ == '__main__':
    sys.exit(main())
