"""Backup artifact text format.

An artifact is a UTF-8 SQL script with a comment header, one section per
table (in dependency order), and an end marker::

    -- crm-backup artifact
    -- format: 1
    -- backup_id: 2025-01-01T00-00-00_ab12cd34
    -- created_at: 2025-01-01T00:00:00+00:00
    -- include_data: true
    -- tables: schools, contacts
    -- table: schools
    CREATE TABLE IF NOT EXISTS schools (...);
    INSERT INTO "schools" ("id", "name") VALUES ('s1', 'O''Brien High');
    -- table: contacts
    ...
    -- end of artifact

Row values are rendered as SQL literals.  Strings are single-quoted with
embedded quotes doubled, and missing values are ``NULL``.  Statements are
split on ``;`` only outside quoted literals and identifiers, so no row
content can end a statement early or start a new one.

Usage:
    from crm_backup.backup.codec import encode_insert, parse_artifact, render_artifact

    stmt = encode_insert("schools", {"id": "s1", "name": "A; DROP TABLE x"})
    artifact = parse_artifact(text)
    artifact.tables                # ["schools", "contacts"]
    artifact.section("schools")    # ArtifactSection(table="schools", statements=[...])
"""

import json
import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

ARTIFACT_MAGIC = "-- crm-backup artifact"
FORMAT_VERSION = "1"
END_MARKER = "-- end of artifact"

COMMENT = "comment"
STATEMENT = "statement"

_TOKEN = re.compile(
    r"""
    (?P<literal>'[^']*(?:''[^']*)*')
    | (?P<ident>"[^"]*(?:""[^"]*)*")
    | (?P<comment>--[^\n]*)
    | (?P<end>;)
    | (?P<text>[^'";-]+|-)
    | (?P<stray>['"])
    """,
    re.VERBOSE,
)

_INSERT_HEAD = re.compile(
    r'^INSERT\s+INTO\s+("(?:[^"]|"")+"|\w+)\s*', re.IGNORECASE
)


class ArtifactFormatError(ValueError):
    """Raised when artifact text cannot be parsed."""


@dataclass
class ArtifactSection:
    """Statements belonging to one table."""

    table: str
    statements: list[str] = field(default_factory=list)

    @property
    def inserts(self) -> list[str]:
        return [s for s in self.statements if s[:6].upper() == "INSERT"]


@dataclass
class Artifact:
    """Parsed artifact."""

    header: dict[str, str]
    sections: list[ArtifactSection]
    complete: bool = False

    @property
    def tables(self) -> list[str]:
        return [s.table for s in self.sections]

    @property
    def header_tables(self) -> list[str]:
        raw = self.header.get("tables", "")
        return [t.strip() for t in raw.split(",") if t.strip()]

    def section(self, table: str) -> ArtifactSection | None:
        for section in self.sections:
            if section.table == table:
                return section
        return None


@dataclass
class ParsedInsert:
    """Table, columns, and decoded values of an ``INSERT`` statement."""

    table: str
    columns: list[str]
    values: list[Any]

    def get(self, column: str) -> Any:
        return self.values[self.columns.index(column)]


# ------------------------------------------------------------------
# Encoding
# ------------------------------------------------------------------


def quote_identifier(name: str) -> str:
    """Double-quote an identifier, doubling embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def _quote_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_literal(value: Any) -> str:
    """Render a Python value as a SQL literal.

    Raises:
        TypeError: If the value type has no literal form.

    Example:
        >>> quote_literal("it's")
        "'it''s'"
        >>> quote_literal(None)
        'NULL'
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value) if math.isfinite(value) else _quote_string(str(value))
    if isinstance(value, Decimal):
        return str(value) if value.is_finite() else _quote_string(str(value))
    if isinstance(value, (datetime, date, time)):
        return _quote_string(value.isoformat())
    if isinstance(value, UUID):
        return _quote_string(str(value))
    if isinstance(value, str):
        return _quote_string(value)
    if isinstance(value, dict):
        return _quote_string(json.dumps(value, sort_keys=True, default=str))
    if isinstance(value, (list, tuple)):
        if not value:
            return "'{}'"
        return "ARRAY[" + ", ".join(quote_literal(v) for v in value) + "]"
    raise TypeError(f"Cannot encode value of type {type(value).__name__}")


def encode_insert(table: str, row: dict[str, Any]) -> str:
    """Render one row as an ``INSERT`` statement (without terminator)."""
    columns = ", ".join(quote_identifier(c) for c in row)
    values = ", ".join(quote_literal(v) for v in row.values())
    return f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({values})"


def render_artifact(
    backup_id: str,
    created_at: datetime,
    include_data: bool,
    sections: list[ArtifactSection],
) -> str:
    """Render a complete artifact.

    Args:
        backup_id: Id recorded in the header.
        created_at: Creation timestamp recorded in the header.
        include_data: Whether sections carry row data.
        sections: Table sections in dependency order.

    Returns:
        Artifact text, newline-terminated.
    """
    lines = [
        ARTIFACT_MAGIC,
        f"-- format: {FORMAT_VERSION}",
        f"-- backup_id: {backup_id}",
        f"-- created_at: {created_at.isoformat()}",
        f"-- include_data: {'true' if include_data else 'false'}",
        f"-- tables: {', '.join(s.table for s in sections)}",
    ]
    for section in sections:
        lines.append(f"-- table: {section.table}")
        lines.extend(f"{statement};" for statement in section.statements)
    lines.append(END_MARKER)
    return "\n".join(lines) + "\n"


# ------------------------------------------------------------------
# Decoding
# ------------------------------------------------------------------


def tokenize(text: str) -> Iterator[tuple[str, str]]:
    """Split SQL text into top-level comments and statements.

    Comments between statements are yielded as ``(COMMENT, text)``;
    comments inside a statement are dropped.  Statements are yielded as
    ``(STATEMENT, text)`` without the terminating ``;``.

    Raises:
        ArtifactFormatError: On an unterminated quote or a trailing
            statement without ``;``.
    """
    buf: list[str] = []

    for match in _TOKEN.finditer(text):
        kind = match.lastgroup
        value = match.group()

        if kind == "stray":
            raise ArtifactFormatError(
                f"Unterminated quoted value at offset {match.start()}"
            )
        if kind == "comment":
            if not "".join(buf).strip():
                buf = []
                yield COMMENT, value.rstrip("\r")
            continue
        if kind == "end":
            statement = "".join(buf).strip()
            buf = []
            if statement:
                yield STATEMENT, statement
            continue
        buf.append(value)

    if "".join(buf).strip():
        raise ArtifactFormatError("Trailing statement without ';' terminator")


def parse_artifact(text: str) -> Artifact:
    """Parse artifact text into header and table sections.

    Raises:
        ArtifactFormatError: If the text is not a well-formed artifact.
    """
    header: dict[str, str] = {}
    sections: list[ArtifactSection] = []
    current: ArtifactSection | None = None
    seen_magic = False
    complete = False

    for kind, value in tokenize(text):
        if not seen_magic:
            if kind == COMMENT and value.strip() == ARTIFACT_MAGIC:
                seen_magic = True
                continue
            raise ArtifactFormatError("Missing artifact header")

        if complete:
            if kind == STATEMENT:
                raise ArtifactFormatError("Statement found after end marker")
            continue

        if kind == COMMENT:
            if value.strip() == END_MARKER:
                complete = True
                continue
            key, sep, val = value[2:].strip().partition(":")
            if not sep:
                continue
            if key.strip() == "table":
                current = ArtifactSection(table=val.strip())
                sections.append(current)
            elif current is None:
                header[key.strip()] = val.strip()
            continue

        if current is None:
            raise ArtifactFormatError("Statement found outside a table section")
        current.statements.append(value)

    if not seen_magic:
        raise ArtifactFormatError("Missing artifact header")

    return Artifact(header=header, sections=sections, complete=complete)


def unquote_literal(token: str) -> Any:
    """Decode a literal produced by ``quote_literal``.

    Strings, ``NULL``, booleans, and plain numbers are decoded; anything
    else (arrays, expressions) is returned as raw SQL text.
    """
    token = token.strip()
    upper = token.upper()
    if upper == "NULL":
        return None
    if upper == "TRUE":
        return True
    if upper == "FALSE":
        return False
    if len(token) >= 2 and token[0] == "'" and token[-1] == "'":
        return token[1:-1].replace("''", "'")
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return Decimal(token)
    except ArithmeticError:
        return token


def _split_top_level(text: str) -> list[str]:
    """Split on commas outside quotes, parentheses, and brackets."""
    parts: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None

    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None  # a doubled quote re-enters on the next char
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(buf).strip())
            buf = []
            continue
        buf.append(ch)

    tail = "".join(buf).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def _take_parenthesized(text: str, start: int) -> tuple[str, int]:
    """Return the contents of the group opening at ``text[start]`` and the index after it."""
    if start >= len(text) or text[start] != "(":
        raise ArtifactFormatError("Expected '(' in INSERT statement")
    depth = 0
    quote: str | None = None
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[start + 1 : i], i + 1
    raise ArtifactFormatError("Unbalanced parentheses in INSERT statement")


def _unquote_identifier(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('""', '"')
    return name


def parse_insert(statement: str) -> ParsedInsert:
    """Parse an ``INSERT INTO t (cols) VALUES (...)`` statement.

    Raises:
        ArtifactFormatError: If the statement is not a single-row insert.
    """
    head = _INSERT_HEAD.match(statement)
    if head is None:
        raise ArtifactFormatError(f"Not an INSERT statement: {statement[:60]!r}")

    table = _unquote_identifier(head.group(1))
    columns_sql, pos = _take_parenthesized(statement, head.end())

    rest = statement[pos:].lstrip()
    if rest[:6].upper() != "VALUES":
        raise ArtifactFormatError("Expected VALUES in INSERT statement")
    rest = rest[6:].lstrip()
    values_sql, end = _take_parenthesized(rest, 0)
    if rest[end:].strip():
        raise ArtifactFormatError("Unexpected text after INSERT values")

    columns = [_unquote_identifier(c) for c in _split_top_level(columns_sql)]
    values = [unquote_literal(v) for v in _split_top_level(values_sql)]
    if len(columns) != len(values):
        raise ArtifactFormatError(
            f"INSERT into {table} has {len(columns)} columns but {len(values)} values"
        )
    return ParsedInsert(table=table, columns=columns, values=values)
