"""Table dependency graph.

Provides the declarative FK graph (``TableGraph``) shared by the
snapshotter and restorer, schema-file parsing, and the CRM's own graph.

Usage:
    from crm_backup.schema import CRM_TABLE_GRAPH, TableGraph, TableDef, ForeignKey
    from crm_backup.schema import parse_foreign_keys, topological_sort
"""

from crm_backup.schema.crm import CRM_TABLE_GRAPH
from crm_backup.schema.graph import (
    CyclicDependencyError,
    parse_foreign_keys,
    parse_primary_keys,
    topological_sort,
)
from crm_backup.schema.models import ForeignKey, TableDef, TableGraph

__all__ = [
    "CRM_TABLE_GRAPH",
    "TableGraph",
    "TableDef",
    "ForeignKey",
    "CyclicDependencyError",
    "parse_foreign_keys",
    "parse_primary_keys",
    "topological_sort",
]
