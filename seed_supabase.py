#!/usr/bin/env python3
"""
Supabase Seeder
====================================
Pushes an exported attendance analytics run (the JSON files written by
``attendance_analytics.py --output json``) into Supabase tables:

    devices            <- devices.json
    attendance_events  <- events.json
    attendance_alerts  <- alerts.json

Table columns are the snake_case versions of the exported camelCase keys.
Rows are upserted on ``id``, so seeding the same run twice is harmless.

Usage:
    python attendance_analytics.py --output json --output-dir ./output
    python seed_supabase.py --url https://<project>.supabase.co --key <service-role key>

    # Credentials from the environment instead:
    export SUPABASE_URL=https://<project>.supabase.co
    export SUPABASE_KEY=<service-role key>   # SUPABASE_SERVICE_ROLE_KEY also works
    python seed_supabase.py --data-dir ./output --clean

    # Count what would be sent, no connection:
    python seed_supabase.py --dry-run
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable

from supabase import create_client, Client


BATCH_SIZE = 100  # rows per REST request

# Seed order: alerts and events may reference devices
TABLES = [
    ("devices", "devices.json"),
    ("attendance_events", "events.json"),
    ("attendance_alerts", "alerts.json"),
]

REQUIRED_FILES = [filename for _, filename in TABLES]

USAGE_HINT = """\
Pass --url and --key, or set them in the environment:
    export SUPABASE_URL=https://<project>.supabase.co
    export SUPABASE_KEY=<service-role key>
(SUPABASE_SERVICE_ROLE_KEY is read when SUPABASE_KEY is unset.)
Both values are under Supabase Dashboard -> Project Settings -> API."""


# ── Row transforms (export camelCase -> table snake_case) ─────────────────

DEVICE_COLUMNS = {
    "id": "id",
    "location": "location",
    "status": "status",
    "lastSync": "last_sync",
    "sessionsToday": "sessions_today",
    "accuracy": "accuracy",
}

EVENT_COLUMNS = {
    "id": "id",
    "studentId": "student_id",
    "studentName": "student_name",
    "courseId": "course_id",
    "courseName": "course_name",
    "occurredOn": "occurred_on",
    "status": "status",
    "source": "source",
    "sessionType": "session_type",
    "capturedAt": "captured_at",
    "deviceId": "device_id",
    "verifiedByInstructor": "verified_by_instructor",
    "notes": "notes",
}

ALERT_COLUMNS = {
    "id": "id",
    "studentId": "student_id",
    "studentName": "student_name",
    "kind": "kind",
    "severity": "severity",
    "message": "message",
    "createdAt": "created_at",
}


def rename_columns(record: dict[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    return {column: record.get(key) for key, column in columns.items()}


def transform_devices(records: list[dict]) -> list[dict]:
    rows = [rename_columns(r, DEVICE_COLUMNS) for r in records]
    for row in rows:
        row["sessions_today"] = row["sessions_today"] or 0
    return rows


def transform_events(records: list[dict]) -> list[dict]:
    rows = [rename_columns(r, EVENT_COLUMNS) for r in records]
    for row in rows:
        row["verified_by_instructor"] = bool(row["verified_by_instructor"])
    return rows


def transform_alerts(records: list[dict]) -> list[dict]:
    """Alerts go in unacknowledged; the dashboard owns acknowledgement."""
    rows = [rename_columns(r, ALERT_COLUMNS) for r in records]
    for row in rows:
        row["acknowledged"] = False
    return rows


TRANSFORMS: dict[str, Callable[[list[dict]], list[dict]]] = {
    "devices": transform_devices,
    "attendance_events": transform_events,
    "attendance_alerts": transform_alerts,
}


# ── Supabase I/O ──────────────────────────────────────────────────────────

def load_json(path: Path) -> list[dict]:
    """Exported records; a single object is treated as one record."""
    data = json.loads(Path(path).read_text())
    return data if isinstance(data, list) else [data]


def missing_files(data_dir: Path) -> list[str]:
    return [f for f in REQUIRED_FILES if not (data_dir / f).exists()]


def _upsert_rows(client: Client, table: str, rows: list[dict], offset: int) -> int:
    stored = 0
    for n, row in enumerate(rows, start=offset):
        try:
            client.table(table).upsert([row]).execute()
            stored += 1
        except Exception as e:
            print(f"  SKIP {table}[{n}] id={row.get('id')}: {e}")
    return stored


def upsert_batch(client: Client, table: str, records: list[dict], batch_size: int = BATCH_SIZE) -> int:
    """
    Upsert ``records`` in batches and return how many rows were stored.
    A rejected batch is retried one row at a time so only bad rows are lost.
    """
    stored = 0
    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        try:
            client.table(table).upsert(batch).execute()
        except Exception as e:
            print(f"\n  {table}: batch at row {start} rejected ({e}), retrying row by row")
            stored += _upsert_rows(client, table, batch, start)
        else:
            stored += len(batch)
        print(f"  {table}: {stored}/{len(records)}", end="\r")

    print(f"  {table}: {stored}/{len(records)} rows ✓")
    return stored


def seed_database(client: Client, data_dir: Path) -> dict[str, int]:
    """Seed every table whose export file is present; returns rows stored per table."""
    results = {}
    for table, filename in TABLES:
        path = data_dir / filename
        if not path.exists():
            print(f"  SKIP {table}: no {filename} in {data_dir}")
            continue
        rows = TRANSFORMS[table](load_json(path))
        print(f"\n  {table}: upserting {len(rows):,} rows")
        results[table] = upsert_batch(client, table, rows)
    return results


def clean_tables(client: Client):
    """Empty the tables, dependents first."""
    print("\n  Clearing tables...")
    for table, _ in reversed(TABLES):
        try:
            client.table(table).delete().neq("id", "").execute()
            print(f"    {table}: cleared")
        except Exception as e:
            print(f"    {table}: could not clear ({e})")


def verify_data(client: Client) -> dict[str, Any]:
    """Print and return the row count Supabase reports for each table."""
    print("\n  Row counts:")
    counts: dict[str, Any] = {}
    for table, _ in TABLES:
        try:
            response = client.table(table).select("id", count="exact").limit(1).execute()
            counts[table] = response.count
        except Exception as e:
            counts[table] = None
            print(f"    {table}: could not count ({e})")
            continue
        print(f"    {table}: {counts[table] if counts[table] is not None else '?'}")
    return counts


# ── CLI ───────────────────────────────────────────────────────────────────

def preview(data_dir: Path) -> int:
    """Print per-file record counts for a dry run; returns the total."""
    total = 0
    for table, filename in TABLES:
        path = data_dir / filename
        if path.exists():
            count = len(load_json(path))
            total += count
            print(f"  {table:<18} {count:>8,}  ({filename})")
        else:
            print(f"  {table:<18} {'-':>8}  ({filename} not found)")
    return total


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed Supabase from an attendance analytics export")
    parser.add_argument("--url", default=os.environ.get("SUPABASE_URL", ""),
                        help="Project URL (default: $SUPABASE_URL)")
    parser.add_argument("--key", default=os.environ.get("SUPABASE_KEY", os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")),
                        help="Service-role or anon key (default: $SUPABASE_KEY, then $SUPABASE_SERVICE_ROLE_KEY)")
    parser.add_argument("--data-dir", default="./output", help="Directory holding the JSON export")
    parser.add_argument("--clean", action="store_true", help="Empty the tables before seeding")
    parser.add_argument("--verify-only", action="store_true", help="Only print table row counts")
    parser.add_argument("--dry-run", action="store_true", help="Count export rows without connecting")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None):
    args = parse_args(argv)
    data_dir = Path(args.data_dir)

    if args.dry_run:
        print(f"Dry run: {data_dir}")
        total = preview(data_dir)
        print(f"\n  {total:,} rows would be sent. Nothing was written.")
        sys.exit(0)

    if not (args.url and args.key):
        print("ERROR: Supabase URL and key are required.\n")
        print(USAGE_HINT)
        sys.exit(1)

    if not args.verify_only:
        missing = missing_files(data_dir)
        if missing:
            print(f"ERROR: {data_dir} is missing {', '.join(missing)}")
            print("Export a run first: python attendance_analytics.py --output json")
            sys.exit(1)

    print("=" * 60)
    print(f"  Supabase: {args.url}")
    print(f"  Key:      {args.key[:12]}...{args.key[-4:]}")
    print(f"  Export:   {data_dir}")
    print("=" * 60)

    client = create_client(args.url, args.key)

    if args.verify_only:
        verify_data(client)
        return

    if args.clean:
        clean_tables(client)

    results = seed_database(client, data_dir)
    verify_data(client)
    print(f"\n  Seeded {sum(results.values()):,} rows into {len(results)} tables.")


if __name__ == "__main__":
    main()
