"""CLI script to bulk-import sales records from CSV files into the backend DB.
Usage: python scripts/import_sales.py FILE [FILE ...] [--dry-run]
"""
import sys
import argparse
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `commission_tracker` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from commission_tracker.database import create_db_and_tables, engine
from commission_tracker import services


def main(paths: List[str], dry_run: bool = False) -> int:
    """Import each CSV file and print per-file and total results.

    Returns the number of rows that failed, so the exit code is non-zero
    when anything was skipped.
    """
    create_db_and_tables()
    total_created = 0
    total_errors = 0
    with Session(engine) as session:
        svc = services.SalesService(session)
        for p in paths:
            f = pathlib.Path(p)
            if not f.exists():
                print(f'File not found: {f}')
                total_errors += 1
                continue
            try:
                result = svc.import_file(f.read_bytes(), dry_run=dry_run)
            except ValueError as e:
                print(f'Error importing {f}: {e}')
                total_errors += 1
                continue
            total_created += result['created']
            total_errors += len(result['errors'])
            print(f'Imported {f}: created {result["created"]}, errors {len(result["errors"])}')
            for err in result['errors']:
                print(f'  line {err["line"]}: {err["error"]}')
    verb = 'Would create' if dry_run else 'Total created'
    print(f'{verb} sales records: {total_created}, errors {total_errors}')
    return total_errors


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('files', nargs='+', help='CSV files to import')
    parser.add_argument('--dry-run', action='store_true', help='Validate rows without writing them')
    args = parser.parse_args()
    sys.exit(1 if main(args.files, dry_run=args.dry_run) else 0)
