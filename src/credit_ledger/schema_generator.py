from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.transaction import CreditTransaction
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    CreditTransaction,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer for review and hand-run migrations. The SQL
    backend creates the same tables itself through SQLAlchemy metadata.
    """
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        for fields in spec.get("unique_indexes", []):
            cols = ", ".join(f'"{f}"' for f in fields)
            columns.append(f'    CONSTRAINT "uq_{table_name}_{"_".join(fields)}" UNIQUE ({cols})')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        for fields in spec.get("indexes", []):
            cols = ", ".join(f'"{f}"' for f in fields)
            ddl += (
                f'CREATE INDEX IF NOT EXISTS "ix_{table_name}_{"_".join(fields)}" '
                f'ON "{table_name}" ({cols});\n'
            )
        lines.append(ddl)
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for document databases like MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "VARCHAR(255)"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def render(backend: str, dialect: str = "postgres") -> str:
    schema = generate_logical_schema()
    if backend == "sql":
        return render_sql_ddl(schema, dialect=dialect)
    return render_nosql_schema(schema)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the credit ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args()
    print(render(args.backend, dialect=args.dialect))


if __name__ == "__main__":
    main()
