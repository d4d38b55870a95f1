"""Column/table schema model shared by the parser, the differ and the CLIs."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Union

import yaml


COLUMN_TYPES: tuple[str, ...] = (
    "increments",
    "bigIncrements",
    "integer",
    "bigInteger",
    "string",
    "text",
    "boolean",
    "date",
    "datetime",
    "timestamp",
    "time",
    "float",
    "double",
    "decimal",
    "binary",
    "json",
    "jsonb",
    "uuid",
    "enum",
)

AUTO_INCREMENT_TYPES = frozenset({"increments", "bigIncrements"})

FLAG_FIELDS = frozenset({"primary", "unique", "nullable", "required", "index"})

# Sentinel default for "current timestamp" in any of its spellings.
NOW = "now"

DEFAULT_STRING_LENGTH = 255
DEFAULT_PRECISION = 8
DEFAULT_SCALE = 2


class Raw(str):
    """Source text passed through verbatim (an expression, not a literal)."""

    def __repr__(self) -> str:
        return f"Raw({str.__repr__(self)})"


DefaultValue = Union[str, int, bool, Raw]


@dataclasses.dataclass(frozen=True)
class ColumnDefinition:
    type: str
    primary: bool = False
    unique: bool = False
    nullable: bool = False
    required: bool = False
    index: bool = False
    default_to: DefaultValue | None = None
    on_update: DefaultValue | None = None
    comment: str | None = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    values: tuple[str, ...] | None = None

    def without_comment(self) -> "ColumnDefinition":
        return dataclasses.replace(self, comment=None)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        for field in dataclasses.fields(self):
            if field.name == "type":
                continue
            value = getattr(self, field.name)
            if value is None or (field.name in FLAG_FIELDS and not value):
                continue
            if field.name in ("default_to", "on_update"):
                value = encode_default(value)
            elif field.name == "values":
                value = list(value)
            out[field.name] = value
        return out


SchemaDefinition = dict[str, ColumnDefinition]


def encode_default(value: DefaultValue) -> Any:
    if isinstance(value, Raw):
        return {"raw": str(value)}
    return value


def decode_default(value: Any, where: str) -> DefaultValue:
    if isinstance(value, dict):
        if set(value) != {"raw"}:
            raise ValueError(f"{where}: expected {{raw: ...}} mapping, got {sorted(value)}")
        return Raw(str(value["raw"]))
    if isinstance(value, (str, int, bool)):
        return value
    raise ValueError(f"{where}: unsupported default value {value!r}")


def column_from_dict(data: dict[str, Any], where: str = "column") -> ColumnDefinition:
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(data).__name__}")
    col_type = data.get("type")
    if col_type not in COLUMN_TYPES:
        raise ValueError(f"{where}: unknown column type {col_type!r}")

    known = {f.name for f in dataclasses.fields(ColumnDefinition)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"{where}: unknown keys {unknown}")

    kwargs = dict(data)
    for key in FLAG_FIELDS:
        kwargs[key] = bool(kwargs.get(key))
    for key in ("default_to", "on_update"):
        if kwargs.get(key) is not None:
            kwargs[key] = decode_default(kwargs[key], f"{where}.{key}")

    if col_type == "enum":
        kwargs["values"] = tuple(str(v) for v in kwargs.get("values") or ())
    elif kwargs.get("values") is not None:
        raise ValueError(f"{where}: values are only allowed on enum columns")
    if kwargs.get("max_length") is not None and col_type != "string":
        raise ValueError(f"{where}: max_length is only allowed on string columns")
    if col_type != "decimal" and (kwargs.get("precision") is not None or kwargs.get("scale") is not None):
        raise ValueError(f"{where}: precision/scale are only allowed on decimal columns")
    if col_type in AUTO_INCREMENT_TYPES:
        kwargs["primary"] = True

    return ColumnDefinition(**kwargs)


def schema_to_dict(schema: SchemaDefinition) -> dict[str, dict[str, Any]]:
    return {name: col.to_dict() for name, col in schema.items()}


def schema_from_dict(data: dict[str, Any] | None, where: str = "schema") -> SchemaDefinition:
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping of columns")
    return {str(name): column_from_dict(col, f"{where}.{name}") for name, col in data.items()}


def same_value(a: Any, b: Any) -> bool:
    """Equality that keeps ``Raw("x")`` apart from ``"x"`` and ``False`` apart from ``0``."""
    return type(a) is type(b) and a == b


def columns_equal(a: ColumnDefinition, b: ColumnDefinition) -> bool:
    """Structural equality; comments do not affect the database schema."""
    return all(
        same_value(getattr(a, field.name), getattr(b, field.name))
        for field in dataclasses.fields(ColumnDefinition)
        if field.name != "comment"
    )


def render_snapshot(table: str, schema: SchemaDefinition) -> str:
    doc = {"table": table, "columns": schema_to_dict(schema)}
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)


def parse_snapshot(text: str, source: str) -> tuple[str, SchemaDefinition]:
    doc = yaml.safe_load(text) or {}
    if not isinstance(doc, dict) or not doc.get("table"):
        raise ValueError(f"{source}: snapshot must be a mapping with a 'table' key")
    table = str(doc["table"])
    return table, schema_from_dict(doc.get("columns"), f"{source}:{table}")


def load_schema_dir(schemas_dir: Path) -> dict[str, SchemaDefinition]:
    if not schemas_dir.is_dir():
        raise ValueError(f"Schemas directory not found: {schemas_dir}")
    tables: dict[str, SchemaDefinition] = {}
    for path in sorted(schemas_dir.glob("*.yaml")) + sorted(schemas_dir.glob("*.yml")):
        table, schema = parse_snapshot(path.read_text(encoding="utf-8"), str(path))
        if table in tables:
            raise ValueError(f"{path}: duplicate snapshot for table {table}")
        tables[table] = schema
    return tables
