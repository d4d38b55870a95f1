#!/usr/bin/env python3
"""Dump table schemas rebuilt from Knex migrations to schemas/{table}.yaml.

Replays every migration in the migrations directory in file-name order and
writes one YAML snapshot per table. Views found in the migrations are listed
but not dumped.

Usage:
    python dump_schemas.py [--migrations-dir DIR] [--out-dir DIR] [--check]
"""

import argparse
import logging
import sys
from pathlib import Path

import yaml

from generate_migration import DEFAULT_CONFIG, check_equal, load_config, write_text
from migration_parser import MigrationsNotFoundError, build_schemas, parse_migrations_dir
from schema_model import render_snapshot


def snapshot_path(out_dir: Path, table: str) -> Path:
    return out_dir / f"{table}.yaml"


def dump(migrations_dir: Path, out_dir: Path, config: dict, check: bool = False) -> int:
    migrations, views = parse_migrations_dir(migrations_dir, config)

    if views:
        print(f"  found {len(views)} view(s), not dumped:")
        for view in views:
            print(f"    {view.view_name} (in {view.source_file})")

    schemas = build_schemas(migrations)
    if not schemas:
        print(f"  {migrations_dir}: no tables found")
        return 0

    ok = True
    for i, (table, schema) in enumerate(schemas.items(), 1):
        path = snapshot_path(out_dir, table)
        content = render_snapshot(table, schema)
        if check:
            ok = check_equal(path, content) and ok
            continue
        print(f"  [{i}/{len(schemas)}] {table} ({len(schema)} columns)", flush=True)
        write_text(path, content)

    if check:
        expected = {snapshot_path(out_dir, table).name for table in schemas}
        stale = sorted(p.name for p in out_dir.glob("*.yaml") if p.name not in expected) if out_dir.is_dir() else []
        for name in stale:
            print(f"[check] snapshot without table in migrations: {out_dir / name}", file=sys.stderr)
        return 0 if ok and not stale else 1

    print(f"\nTotal: {len(schemas)} schemas written to {out_dir}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Dump schemas rebuilt from Knex migrations")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help=f"YAML config file (default: {DEFAULT_CONFIG})")
    parser.add_argument("--migrations-dir", help="Migrations directory (default: migrations)")
    parser.add_argument("--out-dir", help="Snapshot directory (default: schemas)")
    parser.add_argument("--check", action="store_true", help="Verify snapshots are up-to-date without writing")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(message)s",
    )

    try:
        config = load_config(Path(args.config))
        migrations_dir = Path(args.migrations_dir or config.get("migrations_dir", "migrations"))
        out_dir = Path(args.out_dir or config.get("schemas_dir", "schemas"))
        return dump(migrations_dir, out_dir, config, check=args.check)
    except (MigrationsNotFoundError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
