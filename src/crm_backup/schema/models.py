"""Declarative table dependency graph.

Callers declare each table, its primary key, and its FK parents.  The
snapshotter and restorer both derive their forward (create) and reverse
(drop) orders from the same ``TableGraph``.

Usage:
    from crm_backup.schema.models import ForeignKey, TableDef, TableGraph

    graph = TableGraph(tables=[
        TableDef(name="schools"),
        TableDef(name="contacts",
                 parents=[ForeignKey(table="schools", field="school_id")]),
    ])

    graph.forward_order()   # ["schools", "contacts"]
    graph.reverse_order()   # ["contacts", "schools"]
    graph.edges()           # [("schools", []), ("contacts", ["schools"])]
"""

from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from crm_backup.errors import ValidationError
from crm_backup.schema.graph import (
    parse_foreign_keys,
    parse_primary_keys,
    topological_sort,
)


class ForeignKey(BaseModel):
    """Foreign key reference to a parent table."""

    table: str              # parent table name
    field: str              # FK column in this table
    references: str = "id"  # referenced column in the parent table


class TableDef(BaseModel):
    """Definition of a table for backup/restore operations."""

    name: str
    pk: str = "id"
    parents: list[ForeignKey] = Field(default_factory=list)

    @property
    def parent_tables(self) -> list[str]:
        """Distinct parent table names, excluding self-references."""
        seen: list[str] = []
        for fk in self.parents:
            if fk.table != self.name and fk.table not in seen:
                seen.append(fk.table)
        return seen


class TableGraph(BaseModel):
    """FK dependency graph over the tables covered by backups.

    Tables may be declared in any order.  Parents must be declared tables
    and the graph must be acyclic (self-references are allowed).
    """

    tables: list[TableDef]

    @model_validator(mode="after")
    def _check_graph(self) -> "TableGraph":
        names = [t.name for t in self.tables]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate tables in graph: {', '.join(sorted(duplicates))}")

        known = set(names)
        for table in self.tables:
            for parent in table.parent_tables:
                if parent not in known:
                    raise ValueError(
                        f"Table '{table.name}' references unknown parent '{parent}'"
                    )

        topological_sort(self.dependencies(), names, strict=True)
        return self

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tables]

    def get(self, name: str) -> TableDef:
        """Look up a table definition.

        Raises:
            ValidationError: If the table is not part of the graph.
        """
        for table in self.tables:
            if table.name == name:
                return table
        raise ValidationError(f"Unknown table: {name}", table=name)

    def edges(self) -> list[tuple[str, list[str]]]:
        """``(table, parent_tables)`` pairs in forward order."""
        return [(name, self.get(name).parent_tables) for name in self.forward_order()]

    def dependencies(self) -> dict[str, set[str]]:
        return {t.name: set(t.parent_tables) for t in self.tables}

    def children_of(self, name: str) -> list[str]:
        return [t.name for t in self.tables if name in t.parent_tables]

    def validate_names(self, names: Iterable[str]) -> None:
        """Raise ``ValidationError`` if any name is not a known table."""
        unknown = sorted(set(names) - set(self.names))
        if unknown:
            raise ValidationError(
                f"Unknown table(s): {', '.join(unknown)}. "
                f"Known tables: {', '.join(self.names)}"
            )

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def forward_order(self, tables: Iterable[str] | None = None) -> list[str]:
        """Parents-before-children order, restricted to ``tables`` when given.

        The whole graph is sorted before filtering, so a subset keeps the
        order imposed by ancestors that are not part of it.
        """
        order = topological_sort(self.dependencies(), self.names, strict=True)
        if tables is None:
            return order
        requested = set(tables)
        self.validate_names(requested)
        return [name for name in order if name in requested]

    def reverse_order(self, tables: Iterable[str] | None = None) -> list[str]:
        """Children-before-parents order (safe drop order)."""
        return list(reversed(self.forward_order(tables)))

    def parent_closure(self, tables: Iterable[str]) -> list[str]:
        """``tables`` plus all transitive parents, in forward order."""
        pending = list(tables)
        self.validate_names(pending)
        closure: set[str] = set()
        while pending:
            name = pending.pop()
            if name in closure:
                continue
            closure.add(name)
            pending.extend(self.get(name).parent_tables)
        return self.forward_order(closure)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_schema_file(
        cls,
        schema_file: str | Path,
        tables: Iterable[str] | None = None,
    ) -> "TableGraph":
        """Build a graph from the CREATE TABLE statements of a schema file.

        Args:
            schema_file: Path to the SQL schema file.
            tables: Optional subset of tables to keep.  References to
                tables outside the subset are dropped.
        """
        foreign_keys = parse_foreign_keys(schema_file)
        primary_keys = parse_primary_keys(schema_file)

        keep = list(foreign_keys)
        if tables is not None:
            wanted = set(tables)
            keep = [t for t in keep if t in wanted]
        table_defs = [
            TableDef(
                name=name,
                pk=primary_keys.get(name, "id"),
                parents=[
                    ForeignKey(table=parent, field=column, references=parent_column)
                    for column, parent, parent_column in foreign_keys[name]
                    if parent in keep
                ],
            )
            for name in keep
        ]
        return cls(tables=table_defs)
