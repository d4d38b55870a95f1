"""Recover table schemas from Knex migration source files.

Only the builder-call subset of JavaScript/TypeScript that migrations use is
understood: ``knex.schema.createTable('name', function (table) { ... })`` and
its ``alterTable``/``createView``/``dropTable`` siblings, with column chains
such as ``table.string('email', 320).notNullable().unique()`` inside the
callback. The text is tokenized once and walked with explicit bracket-depth
counters, so nested parens/braces and brackets inside string literals do not
end a block early.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable, Union

from schema_model import (
    AUTO_INCREMENT_TYPES,
    COLUMN_TYPES,
    NOW,
    ColumnDefinition,
    DefaultValue,
    Raw,
    SchemaDefinition,
)

logger = logging.getLogger(__name__)


DEFAULT_EXTENSIONS = (".js", ".ts")
DEFAULT_SETUP_MARKERS = (
    r"exports\.up\s*=",
    r"export\s+(?:async\s+)?function\s+up\b",
    r"export\s+const\s+up\s*=",
)
DEFAULT_TEARDOWN_MARKERS = (
    r"exports\.down\s*=",
    r"export\s+(?:async\s+)?function\s+down\b",
    r"export\s+const\s+down\s*=",
)

STRING_PATTERN = r"""'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"|`(?:\\.|[^`\\])*`"""

TOKEN_RE = re.compile(
    rf"""
    (?P<space>\s+)
    |(?P<comment>//[^\n]*|/\*.*?(?:\*/|\Z))
    |(?P<string>{STRING_PATTERN})
    |(?P<number>[0-9]+(?:\.[0-9]+)?)
    |(?P<ident>[A-Za-z_$][\w$]*)
    |(?P<punct>.)
    """,
    flags=re.S | re.X,
)
STRING_RE = re.compile(STRING_PATTERN, flags=re.S)
ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}

CLOSERS = {"(": ")", "[": "]", "{": "}"}

# schema builder method -> normalized call kind
BUILDER_METHODS = {
    "createTable": "createTable",
    "createTableIfNotExists": "createTable",
    "alterTable": "alterTable",
    "table": "alterTable",
    "createView": "createView",
    "createViewOrReplace": "createView",
    "dropTable": "dropTable",
    "dropTableIfExists": "dropTable",
}
CALLBACK_KINDS = {"createTable", "alterTable", "createView"}
# Chain links that scope the builder without changing the call kind.
SCOPE_METHODS = frozenset({"withSchema"})

# Calls on the table builder that are not column declarations.
STRUCTURAL_METHODS = frozenset(
    {
        "index",
        "unique",
        "primary",
        "foreign",
        "dropColumn",
        "dropColumns",
        "dropIndex",
        "dropUnique",
        "dropPrimary",
        "dropForeign",
        "dropTimestamps",
        "renameColumn",
        "timestamps",
        "setNullable",
        "dropNullable",
        "check",
        "comment",
        "engine",
        "charset",
        "collate",
        "inherits",
    }
)
DROP_COLUMN = "dropColumn"
DROP_METHODS = frozenset({"dropColumn", "dropColumns"})

TYPE_MAPPING: dict[str, str] = {name: name for name in COLUMN_TYPES}
TYPE_MAPPING.update({"enu": "enum", "dateTime": "datetime"})

FLAG_MODIFIERS = {
    "primary": "primary",
    "unique": "unique",
    "notNullable": "required",
    "nullable": "nullable",
    "index": "index",
}

NOW_RE = re.compile(
    r"CURRENT_TIMESTAMP|\bfn\s*\.\s*now\s*\(\s*\)|^now\s*\(\s*\)$|^(['\"`])now(?:\(\))?\1$",
    flags=re.I,
)
INTEGER_RE = re.compile(r"[0-9]+")


class MigrationsNotFoundError(FileNotFoundError):
    pass


@dataclasses.dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int


@dataclasses.dataclass(frozen=True)
class BuilderCall:
    kind: str
    name: str
    receiver: str | None = None
    body: str = ""
    offset: int = 0


@dataclasses.dataclass(frozen=True)
class ParsedColumn:
    name: str
    type: str
    parameters: list[Union[str, int]] = dataclasses.field(default_factory=list)
    modifiers: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class AlterOperation:
    type: str
    column_name: str
    definition: ColumnDefinition | None = None


@dataclasses.dataclass(frozen=True)
class ParsedMigration:
    table_name: str
    operation: str
    source_file: str
    columns: SchemaDefinition = dataclasses.field(default_factory=dict)
    alter_operations: tuple[AlterOperation, ...] | None = None


@dataclasses.dataclass(frozen=True)
class ParsedView:
    view_name: str
    source_file: str
    body: str = ""


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    for m in TOKEN_RE.finditer(text):
        kind = m.lastgroup
        if kind in ("space", "comment"):
            continue
        tokens.append(Token(kind=kind, text=m.group(), start=m.start(), end=m.end()))
    return tokens


def unquote(literal: str) -> str:
    inner = literal.strip()[1:-1]
    return re.sub(r"\\(.)", lambda m: ESCAPES.get(m.group(1), m.group(1)), inner, flags=re.S)


def is_quoted(text: str) -> bool:
    return STRING_RE.fullmatch(text.strip()) is not None


def find_closing(tokens: list[Token], index: int) -> int:
    """Index of the token closing the bracket at ``tokens[index]``, or -1."""
    opener = tokens[index].text
    closer = CLOSERS[opener]
    depth = 0
    for idx in range(index, len(tokens)):
        tok = tokens[idx]
        if tok.kind != "punct":
            continue
        if tok.text == opener:
            depth += 1
        elif tok.text == closer:
            depth -= 1
            if depth == 0:
                return idx
    return -1


def split_arguments(tokens: list[Token], start: int, stop: int) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    depth = 0
    begin = start
    for idx in range(start, stop):
        tok = tokens[idx]
        if tok.kind != "punct":
            continue
        if tok.text in CLOSERS:
            depth += 1
        elif tok.text in (")", "]", "}"):
            depth = max(0, depth - 1)
        elif tok.text == "," and depth == 0:
            if idx > begin:
                spans.append((begin, idx))
            begin = idx + 1
    if stop > begin:
        spans.append((begin, stop))
    return spans


def _is_punct(tokens: list[Token], idx: int, text: str) -> bool:
    return 0 <= idx < len(tokens) and tokens[idx].kind == "punct" and tokens[idx].text == text


def _is_ident(tokens: list[Token], idx: int, text: str | None = None) -> bool:
    if not 0 <= idx < len(tokens) or tokens[idx].kind != "ident":
        return False
    return text is None or tokens[idx].text == text


def _span_text(text: str, tokens: list[Token], start: int, stop: int) -> str:
    if start >= stop:
        return ""
    return text[tokens[start].start : tokens[stop - 1].end]


# ---------------------------------------------------------------------------
# Call extraction


def _marker_re(markers: Iterable[str]) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{m})" for m in markers))


def extract_setup_regions(
    text: str,
    setup_markers: Iterable[str] = DEFAULT_SETUP_MARKERS,
    teardown_markers: Iterable[str] = DEFAULT_TEARDOWN_MARKERS,
) -> list[str]:
    setup_re = _marker_re(setup_markers)
    teardown_re = _marker_re(teardown_markers)

    regions: list[str] = []
    pos = 0
    while True:
        m = setup_re.search(text, pos)
        if not m:
            break
        end = len(text)
        teardown = teardown_re.search(text, m.end())
        if teardown:
            end = teardown.start()
        next_setup = setup_re.search(text, m.end())
        if next_setup and next_setup.start() < end:
            end = next_setup.start()
        regions.append(text[m.end() : end])
        pos = end
    return regions


def _callback_receiver(tokens: list[Token], start: int, brace: int) -> str | None:
    for idx in range(start, brace):
        tok = tokens[idx]
        if tok.kind == "ident" and tok.text not in ("function", "async"):
            return tok.text
    return None


def _parse_builder_call(region: str, tokens: list[Token], idx: int) -> tuple[BuilderCall | None, int]:
    """Parse ``.method(...)`` starting at the dot; returns (call, index of closing paren)."""
    kind = BUILDER_METHODS[tokens[idx + 1].text]
    open_idx = idx + 2
    close = find_closing(tokens, open_idx)
    if close < 0:
        return None, -1

    spans = split_arguments(tokens, open_idx + 1, close)
    if not spans:
        return None, close
    first_start, first_stop = spans[0]
    if first_stop - first_start != 1 or tokens[first_start].kind != "string":
        return None, close
    name = unquote(tokens[first_start].text)

    if kind not in CALLBACK_KINDS:
        return BuilderCall(kind=kind, name=name, offset=tokens[idx].start), close

    if len(spans) < 2:
        return None, close
    cb_start, cb_stop = spans[1]
    brace = next((i for i in range(cb_start, cb_stop) if _is_punct(tokens, i, "{")), -1)
    if brace < 0:
        return None, close
    brace_close = find_closing(tokens, brace)
    if brace_close < 0 or brace_close >= close:
        return None, close

    body = region[tokens[brace].end : tokens[brace_close].start]
    call = BuilderCall(
        kind=kind,
        name=name,
        receiver=_callback_receiver(tokens, cb_start, brace),
        body=body,
        offset=tokens[idx].start,
    )
    return call, close


def _is_scope_link(tokens: list[Token], idx: int, chain_end: int) -> bool:
    """``.withSchema(...)`` between ``schema`` and a builder method."""
    return (
        _is_punct(tokens, idx, ".")
        and _is_ident(tokens, idx + 1)
        and tokens[idx + 1].text in SCOPE_METHODS
        and _is_punct(tokens, idx + 2, "(")
        and (_is_ident(tokens, idx - 1, "schema") or idx - 1 == chain_end)
    )


def extract_builder_calls(region: str) -> list[BuilderCall]:
    """Find schema builder invocations in a setup region, in source order.

    Chained calls (``knex.schema.createTable(...).createTable(...)``) are
    followed; anything malformed is skipped.
    """
    tokens = tokenize(region)
    calls: list[BuilderCall] = []
    chain_end = -1
    idx = 0
    while idx < len(tokens) - 2:
        if _is_scope_link(tokens, idx, chain_end):
            close = find_closing(tokens, idx + 2)
            if close < 0:
                idx += 3
                continue
            chain_end = close
            idx = close + 1
            continue
        is_call = (
            _is_punct(tokens, idx, ".")
            and tokens[idx + 1].kind == "ident"
            and tokens[idx + 1].text in BUILDER_METHODS
            and _is_punct(tokens, idx + 2, "(")
            and (_is_ident(tokens, idx - 1, "schema") or idx - 1 == chain_end)
        )
        if not is_call:
            idx += 1
            continue
        call, close = _parse_builder_call(region, tokens, idx)
        if call is not None:
            calls.append(call)
        if close < 0:
            idx += 3
            continue
        chain_end = close
        idx = close + 1
    return calls


# ---------------------------------------------------------------------------
# Column parsing


def _classify_argument(text: str, tokens: list[Token], start: int, stop: int) -> list[Union[str, int]]:
    if stop - start == 1:
        tok = tokens[start]
        if tok.kind == "string":
            return [unquote(tok.text)]
        if tok.kind == "number" and INTEGER_RE.fullmatch(tok.text):
            return [int(tok.text)]
    if _is_punct(tokens, start, "[") and find_closing(tokens, start) == stop - 1:
        items: list[Union[str, int]] = []
        for item_start, item_stop in split_arguments(tokens, start + 1, stop - 1):
            if item_stop - item_start == 1 and tokens[item_start].kind == "string":
                items.append(unquote(tokens[item_start].text))
            else:
                items.append(_span_text(text, tokens, item_start, item_stop))
        return items
    return [Raw(_span_text(text, tokens, start, stop))]


def parse_arguments(text: str) -> list[Union[str, int]]:
    """Positional parameters following the column name.

    ``['a', 'b']`` expands to its unquoted elements, integer literals become
    ints, quoted literals become strings, and anything else is kept as
    :class:`Raw` source text.
    """
    tokens = tokenize(text)
    params: list[Union[str, int]] = []
    for start, stop in split_arguments(tokens, 0, len(tokens)):
        params.extend(_classify_argument(text, tokens, start, stop))
    return params


def _scan_modifiers(text: str, tokens: list[Token], idx: int) -> tuple[list[str], int]:
    modifiers: list[str] = []
    while _is_punct(tokens, idx, ".") and _is_ident(tokens, idx + 1):
        name = tokens[idx + 1].text
        if not _is_punct(tokens, idx + 2, "("):
            modifiers.append(name)
            idx += 2
            continue
        close = find_closing(tokens, idx + 2)
        if close < 0:
            break
        args = _span_text(text, tokens, idx + 3, close).strip()
        modifiers.append(f"{name}({args})" if args else name)
        idx = close + 1
    return modifiers, idx


def parse_modifiers(chain: str) -> list[str]:
    """``.notNullable().defaultTo(knex.fn.now())`` -> ``['notNullable', 'defaultTo(knex.fn.now())']``."""
    modifiers, _ = _scan_modifiers(chain, tokenize(chain), 0)
    return modifiers


def _is_chain_start(tokens: list[Token], idx: int, receiver: str | None) -> bool:
    if not _is_ident(tokens, idx, receiver):
        return False
    if _is_punct(tokens, idx - 1, "."):
        return False
    return (
        _is_punct(tokens, idx + 1, ".")
        and _is_ident(tokens, idx + 2)
        and _is_punct(tokens, idx + 3, "(")
    )


def _declarations(
    text: str,
    tokens: list[Token],
    method: str,
    open_idx: int,
    close: int,
    modifiers: list[str],
    alter: bool,
) -> list[ParsedColumn]:
    spans = split_arguments(tokens, open_idx + 1, close)
    if alter and method in DROP_METHODS:
        return [
            ParsedColumn(name=unquote(tokens[start].text), type=DROP_COLUMN)
            for start, stop in spans
            if stop - start == 1 and tokens[start].kind == "string"
        ]
    if method in STRUCTURAL_METHODS or not spans:
        return []
    first_start, first_stop = spans[0]
    if first_stop - first_start != 1 or tokens[first_start].kind != "string":
        return []

    parameters: list[Union[str, int]] = []
    if len(spans) > 1:
        rest = text[tokens[spans[1][0]].start : tokens[close].start]
        parameters = parse_arguments(rest)
    return [
        ParsedColumn(
            name=unquote(tokens[first_start].text),
            type=method,
            parameters=parameters,
            modifiers=modifiers,
        )
    ]


def parse_columns(body: str, receiver: str | None = None, alter: bool = False) -> list[ParsedColumn]:
    """Column declarations of a builder callback body, in source order.

    When ``receiver`` is given only chains on that name count. In ``alter``
    mode ``dropColumn``/``dropColumns`` yield drop declarations.
    """
    tokens = tokenize(body)
    columns: list[ParsedColumn] = []
    idx = 0
    while idx < len(tokens):
        if not _is_chain_start(tokens, idx, receiver):
            idx += 1
            continue
        method = tokens[idx + 2].text
        open_idx = idx + 3
        close = find_closing(tokens, open_idx)
        if close < 0:
            idx += 1
            continue
        modifiers, next_idx = _scan_modifiers(body, tokens, close + 1)
        columns.extend(_declarations(body, tokens, method, open_idx, close, modifiers, alter))
        idx = next_idx
    return columns


# ---------------------------------------------------------------------------
# Normalization


def parse_default_value(text: str) -> DefaultValue:
    text = text.strip()
    if NOW_RE.search(text):
        return NOW
    if is_quoted(text):
        return unquote(text)
    if text in ("true", "false"):
        return text == "true"
    if INTEGER_RE.fullmatch(text):
        return int(text)
    return Raw(text)


def apply_modifier(fields: dict[str, Any], modifier: str) -> None:
    name, _, args = modifier.partition("(")
    args = args[:-1].strip() if args.endswith(")") else args.strip()

    flag = FLAG_MODIFIERS.get(name)
    if flag:
        fields[flag] = True
    elif name == "defaultTo" and args:
        fields["default_to"] = parse_default_value(args)
    elif name == "onUpdate" and args:
        fields["on_update"] = parse_default_value(args)
    elif name == "comment" and is_quoted(args):
        fields["comment"] = unquote(args)


def normalize_column(column: ParsedColumn) -> ColumnDefinition | None:
    """Canonical definition for a parsed declaration, or None for unknown types."""
    col_type = TYPE_MAPPING.get(column.type)
    if col_type is None:
        logger.warning("Unknown column type %r for column %r, skipping", column.type, column.name)
        return None

    fields: dict[str, Any] = {"type": col_type}
    params = column.parameters
    if col_type == "string" and params and isinstance(params[0], int):
        fields["max_length"] = params[0]
    elif col_type == "decimal" and len(params) >= 2:
        if isinstance(params[0], int) and isinstance(params[1], int):
            fields["precision"] = params[0]
            fields["scale"] = params[1]
    elif col_type == "enum":
        fields["values"] = tuple(p for p in params if isinstance(p, str) and not isinstance(p, Raw))

    for modifier in column.modifiers:
        apply_modifier(fields, modifier)

    if col_type in AUTO_INCREMENT_TYPES:
        fields["primary"] = True

    return ColumnDefinition(**fields)


def columns_to_schema(columns: Iterable[ParsedColumn]) -> SchemaDefinition:
    schema: SchemaDefinition = {}
    for column in columns:
        definition = normalize_column(column)
        if definition is not None:
            schema[column.name] = definition
    return schema


def build_alter_operations(columns: Iterable[ParsedColumn]) -> tuple[AlterOperation, ...]:
    operations: list[AlterOperation] = []
    for column in columns:
        if column.type == DROP_COLUMN:
            operations.append(AlterOperation(type="dropColumn", column_name=column.name))
            continue
        definition = normalize_column(column)
        if definition is None:
            continue
        op_type = "modifyColumn" if "alter" in column.modifiers else "addColumn"
        operations.append(AlterOperation(type=op_type, column_name=column.name, definition=definition))
    return tuple(operations)


# ---------------------------------------------------------------------------
# Files


def parse_migration_source(
    text: str,
    source_file: str,
    config: dict | None = None,
) -> tuple[list[ParsedMigration], list[ParsedView]]:
    parsing_cfg = (config or {}).get("parsing", {})
    setup_markers = parsing_cfg.get("setup_markers", DEFAULT_SETUP_MARKERS)
    teardown_markers = parsing_cfg.get("teardown_markers", DEFAULT_TEARDOWN_MARKERS)

    regions = extract_setup_regions(text, setup_markers, teardown_markers)
    if not regions:
        logger.warning("%s: no up() section found, skipping", source_file)

    migrations: list[ParsedMigration] = []
    views: list[ParsedView] = []
    for region in regions:
        for call in extract_builder_calls(region):
            if call.kind == "createTable":
                columns = parse_columns(call.body, call.receiver)
                migrations.append(
                    ParsedMigration(
                        table_name=call.name,
                        operation="create",
                        source_file=source_file,
                        columns=columns_to_schema(columns),
                    )
                )
            elif call.kind == "alterTable":
                columns = parse_columns(call.body, call.receiver, alter=True)
                migrations.append(
                    ParsedMigration(
                        table_name=call.name,
                        operation="alter",
                        source_file=source_file,
                        alter_operations=build_alter_operations(columns),
                    )
                )
            elif call.kind == "dropTable":
                migrations.append(ParsedMigration(table_name=call.name, operation="drop", source_file=source_file))
            elif call.kind == "createView":
                views.append(ParsedView(view_name=call.name, source_file=source_file, body=call.body))
    return migrations, views


def list_migration_files(migrations_dir: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> list[Path]:
    if not migrations_dir.is_dir():
        raise MigrationsNotFoundError(f"Migrations directory not found: {migrations_dir}")
    suffixes = tuple(extensions)
    files = [
        path
        for path in migrations_dir.iterdir()
        if path.is_file() and path.name.endswith(suffixes) and not path.name.endswith(".d.ts")
    ]
    return sorted(files, key=lambda p: p.name)


def parse_migrations_dir(
    migrations_dir: Path,
    config: dict | None = None,
) -> tuple[list[ParsedMigration], list[ParsedView]]:
    extensions = (config or {}).get("parsing", {}).get("extensions", DEFAULT_EXTENSIONS)

    migrations: list[ParsedMigration] = []
    views: list[ParsedView] = []
    for path in list_migration_files(migrations_dir, extensions):
        parsed, parsed_views = parse_migration_source(path.read_text(encoding="utf-8"), path.name, config)
        logger.debug("%s: %d table operation(s), %d view(s)", path.name, len(parsed), len(parsed_views))
        migrations.extend(parsed)
        views.extend(parsed_views)
    return migrations, views


# ---------------------------------------------------------------------------
# Aggregation


def group_migrations_by_table(migrations: Iterable[ParsedMigration]) -> dict[str, list[ParsedMigration]]:
    grouped: dict[str, list[ParsedMigration]] = defaultdict(list)
    for migration in migrations:
        grouped[migration.table_name].append(migration)
    return dict(grouped)


def merge_migrations(
    table: str,
    migrations: Iterable[ParsedMigration],
    base: SchemaDefinition | None = None,
) -> SchemaDefinition:
    """Replay a table's migrations in file-name order on top of ``base``.

    Returns a new mapping; neither ``base`` nor the migrations are modified.
    """
    merged: SchemaDefinition = dict(base or {})
    ordered = sorted((m for m in migrations if m.table_name == table), key=lambda m: m.source_file)
    for migration in ordered:
        if migration.operation == "create":
            merged.update(migration.columns)
        elif migration.operation == "drop":
            merged = {}
        elif migration.operation == "alter":
            for op in migration.alter_operations or ():
                if op.type == "dropColumn":
                    merged.pop(op.column_name, None)
                elif op.definition is not None:
                    merged[op.column_name] = op.definition
    return merged


def build_schemas(migrations: Iterable[ParsedMigration]) -> dict[str, SchemaDefinition]:
    """Current schema of every table still present at the end of the history."""
    schemas: dict[str, SchemaDefinition] = {}
    for table, table_migrations in group_migrations_by_table(migrations).items():
        ordered = sorted(table_migrations, key=lambda m: m.source_file)
        if ordered[-1].operation == "drop":
            continue
        schemas[table] = merge_migrations(table, ordered)
    return schemas
