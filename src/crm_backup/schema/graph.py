"""Foreign-key dependency graph helpers.

Parses ``REFERENCES`` clauses out of a schema SQL file and orders tables
topologically so that parents always come before children.

Usage:
    from crm_backup.schema.graph import parse_foreign_keys, topological_sort

    fks = parse_foreign_keys("schema.sql")
    # {"contacts": [("school_id", "schools", "id")], "schools": []}

    order = topological_sort({"contacts": {"schools"}}, ["contacts", "schools"])
    # ["schools", "contacts"]
"""

import re
from pathlib import Path

_TABLE_PATTERN = re.compile(
    r"CREATE TABLE(?:\s+IF NOT EXISTS)?\s+(\w+)\s*\((.+?)\);",
    re.IGNORECASE | re.DOTALL,
)

# Inline column reference: ``school_id UUID NOT NULL REFERENCES schools(id)``
_INLINE_REF_PATTERN = re.compile(
    r"^\s*(\w+)\s+[^,]*?\bREFERENCES\s+(\w+)\s*\(\s*(\w+)\s*\)",
    re.IGNORECASE,
)

# Table-level constraint: ``FOREIGN KEY (school_id) REFERENCES schools (id)``
_TABLE_REF_PATTERN = re.compile(
    r"FOREIGN\s+KEY\s*\(\s*(\w+)\s*\)\s*REFERENCES\s+(\w+)\s*\(\s*(\w+)\s*\)",
    re.IGNORECASE,
)

_INLINE_PK_PATTERN = re.compile(r"^\s*(\w+)\s+[^,]*?\bPRIMARY KEY\b", re.IGNORECASE)


class CyclicDependencyError(ValueError):
    """Raised when the FK graph contains a cycle between distinct tables."""


def parse_foreign_keys(schema_file: str | Path) -> dict[str, list[tuple[str, str, str]]]:
    """Parse FK references from a schema SQL file.

    Args:
        schema_file: Path to a SQL file containing CREATE TABLE statements.

    Returns:
        Dict mapping each table to a list of ``(column, parent_table,
        parent_column)`` tuples, in declaration order.  Self-references are
        skipped.

    Raises:
        FileNotFoundError: If the schema file does not exist.
    """
    schema_path = Path(schema_file)
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    content = schema_path.read_text()
    result: dict[str, list[tuple[str, str, str]]] = {}

    for match in _TABLE_PATTERN.finditer(content):
        table_name = match.group(1)
        refs: list[tuple[str, str, str]] = []

        for line in match.group(2).split("\n"):
            line = line.strip().rstrip(",")
            if not line or line.startswith("--"):
                continue
            ref = _TABLE_REF_PATTERN.search(line) or _INLINE_REF_PATTERN.search(line)
            if ref is None:
                continue
            column, parent, parent_column = ref.groups()
            if parent != table_name:
                refs.append((column, parent, parent_column))

        result[table_name] = refs

    return result


def parse_primary_keys(schema_file: str | Path) -> dict[str, str]:
    """Find the single-column primary key of each table in a schema file.

    Tables without an inline ``PRIMARY KEY`` column are omitted.
    """
    content = Path(schema_file).read_text()
    result: dict[str, str] = {}
    for match in _TABLE_PATTERN.finditer(content):
        for line in match.group(2).split("\n"):
            pk = _INLINE_PK_PATTERN.search(line)
            if pk:
                result[match.group(1)] = pk.group(1)
                break
    return result


def topological_sort(
    dependencies: dict[str, set[str]],
    tables: list[str],
    strict: bool = False,
) -> list[str]:
    """Topological sort of tables based on FK dependencies.

    Returns tables in forward order: parent tables first, child tables last.
    Ties keep the order of ``tables``.  Edges to tables outside ``tables``
    are ignored, so sort the full set and filter when ordering a subset.

    Args:
        dependencies: FK dependency graph (table -> set of referenced tables).
        tables: List of table names to sort.
        strict: Raise ``CyclicDependencyError`` on a cycle instead of
            breaking it.

    Returns:
        Tables sorted so that parent tables come before child tables.
    """
    # Only edges between the requested tables matter
    relevant = {t: dependencies.get(t, set()) & set(tables) for t in tables}

    sorted_tables: list[str] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(table: str) -> None:
        if table in visited:
            return
        if table in visiting:
            if strict:
                raise CyclicDependencyError(f"FK cycle detected at table '{table}'")
            return
        visiting.add(table)
        for dep in sorted(relevant.get(table, set()), key=tables.index):
            if dep != table:
                visit(dep)
        visiting.discard(table)
        visited.add(table)
        sorted_tables.append(table)

    for table in tables:
        visit(table)

    return sorted_tables
