"""Schema-aware identifier normalization.

Every component that builds or matches node ids goes through these helpers,
so a table referenced as ``Sales.Orders`` in one file and ``sales.orders`` in
another resolves to the same qualified key.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class QualifiedName:
    """A parsed ``schema.name`` pair."""

    name: str
    schema: str | None = None


def normalize_identifier(value: str | None) -> str | None:
    """Lowercase and trim an identifier.

    Returns None for missing, empty or whitespace-only values.
    """
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


def get_qualified_key(name: str, schema: str | None = None) -> str:
    """Build the canonical matching key for a relation.

    Examples:
        >>> get_qualified_key("Users")
        'users'
        >>> get_qualified_key("USERS", "Public")
        'public.users'
    """
    normalized_name = normalize_identifier(name) or ""
    normalized_schema = normalize_identifier(schema)
    if normalized_schema:
        return f"{normalized_schema}.{normalized_name}"
    return normalized_name


def get_display_name(name: str, schema: str | None = None) -> str:
    """Build a human-readable name, preserving the original case."""
    if schema:
        return f"{schema}.{name}"
    return name


def parse_qualified_key(key: str) -> QualifiedName:
    """Split a qualified key on its first dot.

    ``catalog.schema.table`` parses as schema ``catalog`` and name
    ``schema.table``.
    """
    if "." not in key:
        return QualifiedName(name=key)
    schema, name = key.split(".", 1)
    return QualifiedName(name=name, schema=schema)


def strip_identifier_quotes(value: str) -> str:
    """Remove dialect quoting (``"x"``, ```x```, ``[x]``) from each dotted part."""
    parts = []
    for part in value.split("."):
        part = part.strip()
        if len(part) >= 2 and (
            (part[0] == '"' and part[-1] == '"')
            or (part[0] == "`" and part[-1] == "`")
            or (part[0] == "[" and part[-1] == "]")
        ):
            part = part[1:-1]
        parts.append(part)
    return ".".join(parts)
