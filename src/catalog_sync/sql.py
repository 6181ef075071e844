"""SQL normalization utilities for stable hashing and table detection."""

import hashlib
import re
from dataclasses import dataclass

import sqlglot
import structlog
from sqlglot import exp
from sqlglot.errors import SqlglotError
from sqlglot.tokens import Tokenizer, TokenType

logger = structlog.get_logger(__name__)

_TRAILING_TERMINATORS = re.compile(r"[\s;]+$")

# Tokens whose text is data, never a keyword
_LITERAL_TOKENS = {TokenType.STRING, TokenType.IDENTIFIER, TokenType.VAR, TokenType.NUMBER}

# Clauses that turn a plain table read into a query
_QUERY_CLAUSES = (
    exp.Join,
    exp.Where,
    exp.Group,
    exp.Having,
    exp.Qualify,
    exp.Order,
    exp.Limit,
    exp.Offset,
    exp.Distinct,
    exp.With,
    exp.Subquery,
)


@dataclass(frozen=True)
class TableRef:
    """A table reference resolved from SQL."""

    name: str
    schema: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


def normalize_sql(sql: str | None) -> str:
    """
    Normalize SQL for stable hashing.

    The statement is parsed and re-rendered with lowercase keywords and
    function names, so that case and formatting differences disappear.
    SQL the parser rejects falls back to
    a trimmed, whitespace-collapsed form. Either way the result carries no
    trailing semicolon, and normalizing twice gives the same string.

    Args:
        sql: Raw SQL string.

    Returns:
        Normalized SQL, or "" for blank input.
    """
    if sql is None or not sql.strip():
        return ""
    trimmed = strip_trailing_semicolon(sql)
    try:
        statement = sqlglot.parse_one(trimmed)
        rendered = statement.sql(normalize_functions="lower") if statement is not None else ""
        if rendered.strip():
            return collapse_whitespace(strip_trailing_semicolon(lowercase_keywords(rendered)))
    except SqlglotError as e:
        logger.debug("normalize_sql_parse_failed", error=str(e))
    return collapse_whitespace(trimmed)


def sql_fingerprint(normalized_sql: str) -> str:
    """32-char MD5 hex digest of already-normalized SQL."""
    return hashlib.md5(normalized_sql.encode("utf-8")).hexdigest()


def extract_table_names(sql: str | None) -> list[str]:
    """
    Extract table names from SQL.

    Names are qualified with their schema when the SQL qualifies them,
    de-duplicated and kept in order of appearance. Names bound by a WITH
    clause are not tables and are left out.

    Returns an empty list when the SQL cannot be parsed.
    """
    statement = _parse(sql)
    if statement is None:
        return []

    cte_names = {cte.alias_or_name.lower() for cte in statement.find_all(exp.CTE)}
    names: list[str] = []
    for table in statement.find_all(exp.Table):
        ref = _table_ref(table)
        if ref is None:
            continue
        if ref.schema is None and ref.name.lower() in cte_names:
            continue
        if ref.qualified_name not in names:
            names.append(ref.qualified_name)
    return names


def is_single_table(sql: str | None) -> bool:
    """True if exactly one table is referenced."""
    return len(extract_table_names(sql)) == 1


def resolve_primary_table(sql: str | None) -> TableRef | None:
    """Return the table a single-table query reads from, None otherwise."""
    statement = _parse(sql)
    if statement is None or not is_single_table(sql):
        return None
    for table in statement.find_all(exp.Table):
        ref = _table_ref(table)
        if ref is not None:
            return ref
    return None


def is_plain_table_read(sql: str | None) -> bool:
    """
    True when the SQL only projects columns of a single table.

    ``SELECT * FROM t`` and ``SELECT a, b FROM s.t`` qualify; anything with
    joins, filters, grouping, ordering, limits, CTEs, set operations or
    computed projections does not.
    """
    statement = _parse(sql)
    if not isinstance(statement, exp.Select):
        return False
    if statement.find(*_QUERY_CLAUSES) is not None:
        return False
    tables = list(statement.find_all(exp.Table))
    if len(tables) != 1 or not isinstance(tables[0].parent, exp.From):
        return False
    return all(isinstance(projection, (exp.Star, exp.Column)) for projection in statement.expressions)


def strip_trailing_semicolon(sql: str) -> str:
    """Trim whitespace and any trailing statement terminators."""
    return _TRAILING_TERMINATORS.sub("", sql.strip())


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def lowercase_keywords(sql: str) -> str:
    """Lowercase SQL keywords, leaving literals and identifiers as written."""
    try:
        tokens = Tokenizer().tokenize(sql)
    except SqlglotError:
        return sql

    chars = list(sql)
    for token in tokens:
        if token.token_type in _LITERAL_TOKENS:
            continue
        if token.text.upper() not in Tokenizer.KEYWORDS:
            continue
        # Spans are inclusive; skip tokens whose text differs from the source
        if sql[token.start:token.end + 1] != token.text:
            continue
        chars[token.start:token.end + 1] = token.text.lower()
    return "".join(chars)


def _parse(sql: str | None) -> exp.Expression | None:
    if sql is None or not sql.strip():
        return None
    try:
        return sqlglot.parse_one(strip_trailing_semicolon(sql))
    except SqlglotError as e:
        logger.debug("sql_parse_failed", error=str(e))
        return None


def _table_ref(table: exp.Table) -> TableRef | None:
    name = (table.name or "").replace("`", "").strip()
    if not name:
        return None
    schema = (table.db or "").replace("`", "").strip() or None
    return TableRef(name=name, schema=schema)
