"""Parameterized statement builders for the convenience CRUD helpers.

Values are always passed as bound parameters. Identifiers (table and column
names) cannot be bound, so they must match IDENTIFIER_RE or a ValueError is
raised before any SQL is produced.
"""

from collections.abc import Mapping, Sequence
import re
from typing import Any

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

Statement = tuple[str, dict[str, Any]]


def quote_identifier(name: str) -> str:
    """Validate a table/column identifier and return it unchanged.

    Raises:
        ValueError: If `name` is not a plain (optionally schema-qualified) identifier.
    """
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _returning_clause(returning: Sequence[str]) -> str:
    if not returning:
        raise ValueError("returning must name at least one column (or '*')")
    if list(returning) == ["*"]:
        return "*"
    return ", ".join(quote_identifier(col) for col in returning)


def _where_clause(match: Mapping[str, Any], prefix: str) -> tuple[str, dict[str, Any]]:
    parts: list[str] = []
    params: dict[str, Any] = {}
    for i, (column, value) in enumerate(match.items()):
        name = f"{prefix}{i}"
        parts.append(f"{quote_identifier(column)} = :{name}")
        params[name] = value
    return " AND ".join(parts), params


def build_select_one(table: str, match: Mapping[str, Any]) -> Statement:
    """SELECT * ... WHERE <match> LIMIT 1. An empty match selects any row."""
    table = quote_identifier(table)
    if not match:
        return f"SELECT * FROM {table} LIMIT 1", {}
    where, params = _where_clause(match, "w_")
    return f"SELECT * FROM {table} WHERE {where} LIMIT 1", params


def build_insert(
    table: str,
    fields: Mapping[str, Any],
    returning: Sequence[str] = ("*",),
) -> Statement:
    table = quote_identifier(table)
    if not fields:
        raise ValueError("insert requires at least one field")
    columns = [quote_identifier(col) for col in fields]
    params = {f"v_{i}": value for i, value in enumerate(fields.values())}
    placeholders = ", ".join(f":{name}" for name in params)
    sql = (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"RETURNING {_returning_clause(returning)}"
    )
    return sql, params


def build_update(
    table: str,
    match: Mapping[str, Any],
    fields: Mapping[str, Any],
    returning: Sequence[str] = ("*",),
) -> Statement:
    table = quote_identifier(table)
    if not fields:
        raise ValueError("update requires at least one field")
    if not match:
        raise ValueError("update requires at least one match condition")
    assignments: list[str] = []
    params: dict[str, Any] = {}
    for i, (column, value) in enumerate(fields.items()):
        name = f"s_{i}"
        assignments.append(f"{quote_identifier(column)} = :{name}")
        params[name] = value
    where, where_params = _where_clause(match, "w_")
    params.update(where_params)
    sql = (
        f"UPDATE {table} SET {', '.join(assignments)} "
        f"WHERE {where} "
        f"RETURNING {_returning_clause(returning)}"
    )
    return sql, params


def build_delete(
    table: str,
    match: Mapping[str, Any],
    returning: Sequence[str] = ("*",),
) -> Statement:
    table = quote_identifier(table)
    if not match:
        raise ValueError("delete requires at least one match condition")
    where, params = _where_clause(match, "w_")
    return f"DELETE FROM {table} WHERE {where} RETURNING {_returning_clause(returning)}", params
