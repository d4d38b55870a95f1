#!/usr/bin/env python3
"""Generate a Knex migration from migration history + desired schema snapshots.

The previous schema of every table is rebuilt by replaying the migrations in
``--migrations-dir``; the desired schema is read from the YAML snapshots in
``--schemas-dir`` (see ``dump_schemas.py``). The difference becomes one
migration file with ``exports.up`` / ``exports.down``.
"""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import logging
import sys
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import yaml

from migration_parser import MigrationsNotFoundError, build_schemas, parse_migrations_dir
from schema_model import (
    AUTO_INCREMENT_TYPES,
    DEFAULT_PRECISION,
    DEFAULT_SCALE,
    DEFAULT_STRING_LENGTH,
    NOW,
    ColumnDefinition,
    DefaultValue,
    Raw,
    SchemaDefinition,
    columns_equal,
    load_schema_dir,
    same_value,
)

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = "knexmigrate.yaml"
DEFAULT_INDENT = "  "

ALTER = "alter"
RAW = "raw"
RECREATE = "recreate"

KNEX_METHODS = {"enum": "enu"}

# Fields whose change alone never needs more than ``.alter()``.
SAFE_FIELDS = frozenset({"max_length", "precision", "scale", "nullable", "required", "default_to", "on_update"})


@dataclasses.dataclass(frozen=True)
class MigrationOperation:
    kind: str
    table: str
    column: str | None = None
    definition: ColumnDefinition | None = None
    old_definition: ColumnDefinition | None = None
    alteration_type: str | None = None
    schema: SchemaDefinition | None = None
    old_schema: SchemaDefinition | None = None
    note: str | None = None

    def is_batchable(self) -> bool:
        if self.kind in ("addColumn", "dropColumn"):
            return True
        return self.kind == "alterColumn" and self.alteration_type == ALTER

    def describe(self) -> str:
        target = f"{self.table}.{self.column}" if self.column else self.table
        if self.kind == "alterColumn":
            return f"{self.kind} {target} ({self.alteration_type})"
        if self.kind == "manual":
            return f"manual {target}: {self.note}"
        return f"{self.kind} {target}"


@dataclasses.dataclass(frozen=True)
class MigrationStep:
    table: str
    operations: tuple[MigrationOperation, ...]
    batched: bool


def manual_operation(table: str, column: str | None, note: str) -> MigrationOperation:
    return MigrationOperation(kind="manual", table=table, column=column, note=note)


# ---------------------------------------------------------------------------
# Diff + classification


def diff_schema(table: str, old: SchemaDefinition, new: SchemaDefinition) -> list[MigrationOperation]:
    operations: list[MigrationOperation] = []
    for name, definition in new.items():
        if name not in old:
            operations.append(MigrationOperation(kind="addColumn", table=table, column=name, definition=definition))
    for name, old_definition in old.items():
        if name not in new:
            operations.append(
                MigrationOperation(kind="dropColumn", table=table, column=name, old_definition=old_definition)
            )
    for name, definition in new.items():
        old_definition = old.get(name)
        if old_definition is None or columns_equal(old_definition, definition):
            continue
        operations.append(
            MigrationOperation(
                kind="alterColumn",
                table=table,
                column=name,
                definition=definition,
                old_definition=old_definition,
                alteration_type=classify_alteration(old_definition, definition),
            )
        )
    return operations


def diff_schemas(
    old_tables: dict[str, SchemaDefinition],
    new_tables: dict[str, SchemaDefinition],
) -> list[MigrationOperation]:
    operations: list[MigrationOperation] = []
    for table, schema in new_tables.items():
        if table not in old_tables:
            operations.append(MigrationOperation(kind="createTable", table=table, schema=dict(schema)))
        else:
            operations.extend(diff_schema(table, old_tables[table], schema))
    for table, schema in old_tables.items():
        if table not in new_tables:
            operations.append(MigrationOperation(kind="dropTable", table=table, old_schema=dict(schema)))
    return operations


def changed_fields(old: ColumnDefinition, new: ColumnDefinition) -> set[str]:
    return {
        field.name
        for field in dataclasses.fields(ColumnDefinition)
        if field.name != "comment" and not same_value(getattr(old, field.name), getattr(new, field.name))
    }


def tightens_nullability(old: ColumnDefinition, new: ColumnDefinition) -> bool:
    return (old.nullable and not new.nullable) or (not old.required and new.required)


def loosens_nullability(old: ColumnDefinition, new: ColumnDefinition) -> bool:
    return (not old.nullable and new.nullable) or (old.required and not new.required)


def can_use_alter(old: ColumnDefinition, new: ColumnDefinition) -> bool:
    if old.type != new.type:
        return False
    changed = changed_fields(old, new)
    if not changed <= SAFE_FIELDS:
        return False
    if "max_length" in changed:
        if (new.max_length or DEFAULT_STRING_LENGTH) < (old.max_length or DEFAULT_STRING_LENGTH):
            return False
    if changed & {"precision", "scale"}:
        if (new.precision or DEFAULT_PRECISION) < (old.precision or DEFAULT_PRECISION):
            return False
        if (new.scale or DEFAULT_SCALE) < (old.scale or DEFAULT_SCALE):
            return False
    return not tightens_nullability(old, new)


def needs_raw(old: ColumnDefinition, new: ColumnDefinition) -> bool:
    return (
        old.unique != new.unique
        or old.primary != new.primary
        or old.index != new.index
        or (old.type == new.type == "enum" and old.values != new.values)
        or tightens_nullability(old, new)
    )


def classify_alteration(old: ColumnDefinition, new: ColumnDefinition) -> str:
    """``alter`` if ``.alter()`` is enough, ``raw`` for constraint work, else ``recreate``."""
    if can_use_alter(old, new):
        return ALTER
    if needs_raw(old, new):
        return RAW
    return RECREATE


# ---------------------------------------------------------------------------
# Grouping + reversal


def can_batch_operations(operations: Iterable[MigrationOperation]) -> bool:
    return all(op.is_batchable() for op in operations)


def group_operations(operations: Iterable[MigrationOperation]) -> list[MigrationStep]:
    """Fold runs of batchable operations on one table into a single step.

    Raw/recreate alterations, table-level operations and manual placeholders
    stay standalone and keep their position between the batches.
    """
    steps: list[MigrationStep] = []
    for op in operations:
        batchable = op.is_batchable()
        if batchable and steps and steps[-1].batched and steps[-1].table == op.table:
            last = steps[-1]
            steps[-1] = MigrationStep(table=last.table, operations=last.operations + (op,), batched=True)
            continue
        steps.append(MigrationStep(table=op.table, operations=(op,), batched=batchable))
    return steps


def reverse_operation(op: MigrationOperation) -> MigrationOperation:
    if op.kind == "addColumn":
        return MigrationOperation(kind="dropColumn", table=op.table, column=op.column, old_definition=op.definition)
    if op.kind == "dropColumn":
        if op.old_definition is None:
            return manual_operation(op.table, op.column, f"restore column '{op.column}', original definition unavailable")
        return MigrationOperation(kind="addColumn", table=op.table, column=op.column, definition=op.old_definition)
    if op.kind == "alterColumn":
        if op.old_definition is None:
            return manual_operation(op.table, op.column, f"revert column '{op.column}', original definition unavailable")
        return MigrationOperation(
            kind="alterColumn",
            table=op.table,
            column=op.column,
            definition=op.old_definition,
            old_definition=op.definition,
            alteration_type=op.alteration_type,
        )
    if op.kind == "createTable":
        return MigrationOperation(kind="dropTable", table=op.table, old_schema=op.schema)
    if op.kind == "dropTable":
        if op.old_schema is None:
            return manual_operation(op.table, None, f"recreate table '{op.table}', original schema unavailable")
        return MigrationOperation(kind="createTable", table=op.table, schema=op.old_schema)
    return op


def reverse_operations(operations: Iterable[MigrationOperation]) -> list[MigrationOperation]:
    return [reverse_operation(op) for op in reversed(list(operations))]


def apply_operations(
    tables: dict[str, SchemaDefinition],
    operations: Iterable[MigrationOperation],
) -> dict[str, SchemaDefinition]:
    result = {table: dict(schema) for table, schema in tables.items()}
    for op in operations:
        if op.kind == "createTable":
            result[op.table] = dict(op.schema or {})
        elif op.kind == "dropTable":
            result.pop(op.table, None)
        elif op.kind in ("addColumn", "alterColumn"):
            result.setdefault(op.table, {})[op.column] = op.definition
        elif op.kind == "dropColumn":
            result.get(op.table, {}).pop(op.column, None)
        else:
            raise ValueError(f"Cannot replay operation: {op.describe()}")
    return result


# ---------------------------------------------------------------------------
# Rendering


def js_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n")
    return f"'{escaped}'"


def render_default(value: DefaultValue) -> str:
    if isinstance(value, Raw):
        return str(value)
    if value == NOW:
        return "knex.fn.now()"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return js_string(value)


def render_column(name: str, definition: ColumnDefinition, alter: bool = False) -> str:
    args = [js_string(name)]
    if definition.type == "string" and definition.max_length:
        args.append(str(definition.max_length))
    elif definition.type == "decimal" and definition.precision and definition.scale is not None:
        args.extend([str(definition.precision), str(definition.scale)])
    elif definition.type == "enum":
        args.append("[" + ", ".join(js_string(v) for v in definition.values or ()) + "]")

    method = KNEX_METHODS.get(definition.type, definition.type)
    builder = f"table.{method}({', '.join(args)})"

    if definition.primary and definition.type not in AUTO_INCREMENT_TYPES:
        builder += ".primary()"
    if definition.unique:
        builder += ".unique()"
    if definition.nullable:
        builder += ".nullable()"
    elif definition.required:
        builder += ".notNullable()"
    if definition.default_to is not None:
        builder += f".defaultTo({render_default(definition.default_to)})"
    if definition.index:
        builder += ".index()"
    if definition.comment:
        builder += f".comment({js_string(definition.comment)})"
    if alter:
        builder += ".alter()"
    return builder


def render_table_call(method: str, table: str, lines: list[str], indent: str) -> str:
    body = "\n".join(f"{indent * 2}{line}" for line in lines)
    return f"{indent}await knex.schema.{method}({js_string(table)}, function (table) {{\n{body}\n{indent}}})"


def render_batch_line(op: MigrationOperation) -> str:
    if op.kind == "addColumn":
        return render_column(op.column, op.definition)
    if op.kind == "dropColumn":
        return f"table.dropColumn({js_string(op.column)})"
    return render_column(op.column, op.definition, alter=True)


def render_raw_alteration(op: MigrationOperation, indent: str) -> list[str]:
    table, column = op.table, op.column
    old, new = op.old_definition, op.definition
    statements: list[str] = []

    if tightens_nullability(old, new):
        fill = render_default(new.default_to) if new.default_to is not None else "''"
        statements.append(f"{indent}// WARNING: backfilling NULLs in {table}.{column} before adding NOT NULL")
        statements.append(
            f"{indent}await knex({js_string(table)}).whereNull({js_string(column)})"
            f".update({{ {js_string(column)}: {fill} }})"
        )

    shape_changed = bool(changed_fields(old, new) - {"nullable", "required", "unique", "primary", "index", "values"})
    if shape_changed:
        # .unique()/.index()/.primary() under .alter() would add the constraint again;
        # flips are rendered once, by the builder lines below
        reshaped = dataclasses.replace(new, unique=False, index=False, primary=False)
        statements.append(render_table_call("alterTable", table, [render_column(column, reshaped, alter=True)], indent))
    elif tightens_nullability(old, new):
        statements.append(f"{indent}await knex.raw('ALTER TABLE ?? ALTER COLUMN ?? SET NOT NULL', [{js_string(table)}, {js_string(column)}])")
    elif loosens_nullability(old, new):
        statements.append(f"{indent}await knex.raw('ALTER TABLE ?? ALTER COLUMN ?? DROP NOT NULL', [{js_string(table)}, {js_string(column)}])")

    if old.type == new.type == "enum" and old.values != new.values:
        constraint = f"{table}_{column}_check"
        values_sql = ", ".join("'" + v.replace("'", "''") + "'" for v in new.values or ())
        statements.append(f"{indent}// WARNING: changing enum values, existing rows must fit the new set")
        statements.append(
            f"{indent}await knex.raw('ALTER TABLE ?? DROP CONSTRAINT IF EXISTS ??', [{js_string(table)}, {js_string(constraint)}])"
        )
        statements.append(
            f"{indent}await knex.raw({js_string(f'ALTER TABLE ?? ADD CONSTRAINT ?? CHECK (?? IN ({values_sql}))')}, "
            f"[{js_string(table)}, {js_string(constraint)}, {js_string(column)}])"
        )

    constraint_lines: list[str] = []
    if old.unique != new.unique:
        constraint_lines.append(f"table.{'unique' if new.unique else 'dropUnique'}([{js_string(column)}])")
    if old.primary != new.primary:
        constraint_lines.append(f"table.primary([{js_string(column)}])" if new.primary else "table.dropPrimary()")
    if old.index != new.index:
        constraint_lines.append(f"table.{'index' if new.index else 'dropIndex'}([{js_string(column)}])")
    if constraint_lines:
        statements.append(render_table_call("alterTable", table, constraint_lines, indent))

    if not statements:
        statements.append(f"{indent}// No raw statements needed for {table}.{column}")
    return statements


def render_operation(op: MigrationOperation, indent: str) -> list[str]:
    if op.kind == "createTable":
        lines = [render_column(name, definition) for name, definition in (op.schema or {}).items()]
        return [render_table_call("createTable", op.table, lines, indent)]
    if op.kind == "dropTable":
        return [f"{indent}await knex.schema.dropTableIfExists({js_string(op.table)})"]
    if op.kind == "manual":
        return [f"{indent}// MANUAL: {op.table}: {op.note}"]
    if op.alteration_type == RAW:
        return render_raw_alteration(op, indent)
    if op.alteration_type == RECREATE:
        return [
            f"{indent}// WARNING: recreating {op.table}.{op.column} drops its data",
            render_table_call("alterTable", op.table, [f"table.dropColumn({js_string(op.column)})"], indent),
            render_table_call("alterTable", op.table, [render_column(op.column, op.definition)], indent),
        ]
    return [render_table_call("alterTable", op.table, [render_batch_line(op)], indent)]


def render_steps(steps: Iterable[MigrationStep], indent: str = DEFAULT_INDENT) -> list[str]:
    blocks: list[str] = []
    for step in steps:
        if step.batched and can_batch_operations(step.operations):
            lines = [render_batch_line(op) for op in step.operations]
            blocks.append(render_table_call("alterTable", step.table, lines, indent))
            continue
        for op in step.operations:
            blocks.append("\n".join(render_operation(op, indent)))
    return blocks


def render_migration(
    operations: list[MigrationOperation],
    header_comment: str = "",
    indent: str = DEFAULT_INDENT,
) -> str:
    up_blocks = render_steps(group_operations(operations), indent)
    down_blocks = render_steps(group_operations(reverse_operations(operations)), indent)

    lines: list[str] = []
    if header_comment.strip():
        lines.append(header_comment.strip())
        lines.append("")
    lines.append("exports.up = async function (knex) {")
    lines.append("\n\n".join(up_blocks) if up_blocks else f"{indent}// No operations to perform")
    lines.append("}")
    lines.append("")
    lines.append("exports.down = async function (knex) {")
    lines.append("\n\n".join(down_blocks) if down_blocks else f"{indent}// No operations to reverse")
    lines.append("}")
    lines.append("")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    config = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(config, dict):
        raise ValueError(f"{path}: config must be a mapping")
    return config


def generate_outputs(
    migrations_dir: Path,
    schemas_dir: Path,
    config: dict,
) -> tuple[str, list[MigrationOperation]]:
    migrations, _ = parse_migrations_dir(migrations_dir, config)
    previous = build_schemas(migrations)
    current = load_schema_dir(schemas_dir)
    operations = diff_schemas(previous, current)

    rendering = config.get("rendering", {})
    text = render_migration(
        operations,
        header_comment=rendering.get("header_comment", ""),
        indent=rendering.get("indent", DEFAULT_INDENT),
    )
    return text, operations


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def migration_file_name(name: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    return f"{stamp}_{name}.js"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a Knex migration from schema snapshots")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="YAML config file")
    parser.add_argument("--migrations-dir", help="Directory of existing migrations")
    parser.add_argument("--schemas-dir", help="Directory of desired schema snapshots")
    parser.add_argument("--name", default="schema_changes", help="Migration name suffix")
    parser.add_argument("--out", help="Output file (default: <migrations-dir>/<timestamp>_<name>.js)")
    parser.add_argument("--check", action="store_true", help="Exit 1 if snapshots differ from migration history")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(message)s",
    )

    try:
        config = load_config(Path(args.config))
        migrations_dir = Path(args.migrations_dir or config.get("migrations_dir", "migrations"))
        schemas_dir = Path(args.schemas_dir or config.get("schemas_dir", "schemas"))
        text, operations = generate_outputs(migrations_dir, schemas_dir, config)
    except (MigrationsNotFoundError, ValueError, yaml.YAMLError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.check:
        if not operations:
            return 0
        print(f"[check] drift detected: {len(operations)} pending operation(s)", file=sys.stderr)
        for op in operations:
            print(f"  {op.describe()}", file=sys.stderr)
        return 1

    if not operations:
        print("No schema changes detected")
        return 0

    out = Path(args.out) if args.out else migrations_dir / migration_file_name(args.name)
    write_text(out, text)

    counts = Counter(op.alteration_type or op.kind for op in operations)
    print(f"Generated {out}")
    for label, count in sorted(counts.items()):
        print(f"  {label}: {count}")
    if counts.get(RECREATE):
        print("  review recreate steps: they drop and re-add columns", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
