"""Best-effort recovery of CTE names and subquery aliases from SQL text.

CTEs and subquery aliases look like table references to the extractor but
are not persisted relations. The builder re-reads a file's text and runs an
ordered chain of strategies to learn those names:

1. ``SqlglotCteStrategy``: AST parse across several dialects
2. ``RegexCteStrategy``: ``WITH [RECURSIVE] name AS (`` scanning
3. ``SubqueryAliasStrategy``: balanced-parenthesis scan for ``(SELECT ...) AS alias``

File access goes through a ``SourceTextProvider`` so that the builder can be
driven from memory in tests and the reads can be cached.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Protocol, runtime_checkable

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

from lineagescope.identifiers import strip_identifier_quotes

logger = logging.getLogger(__name__)


SQL_RESERVED_WORDS = frozenset(
    {
        "all", "alter", "and", "as", "between", "by", "case", "create", "cross",
        "delete", "distinct", "drop", "else", "end", "except", "exists", "fetch",
        "for", "from", "full", "group", "having", "in", "inner", "insert",
        "intersect", "into", "is", "join", "lateral", "left", "like", "limit",
        "matched", "merge", "natural", "not", "null", "offset", "on", "or",
        "order", "outer", "over", "partition", "pivot", "qualify", "recursive",
        "returning", "right", "select", "set", "table", "then", "top", "union",
        "unpivot", "update", "using", "values", "view", "when", "where",
        "window", "with",
    }
)

_IDENTIFIER = r'(?:[A-Za-z_][\w$]*|"[^"]+"|`[^`]+`|\[[^\]]+\])'


# =============================================================================
# Source text providers
# =============================================================================


@runtime_checkable
class SourceTextProvider(Protocol):
    """Supplies raw SQL text for a file path, or None if unavailable."""

    def read_text(self, file_path: str) -> str | None:
        ...


class FileSystemSourceProvider:
    """Read SQL files from disk.

    Relative paths resolve against ``root``. Unreadable files (deleted,
    moved, undecodable) yield None.
    """

    def __init__(self, root: str | Path | None = None, encoding: str = "utf-8"):
        self._root = Path(root) if root is not None else None
        self._encoding = encoding

    def read_text(self, file_path: str) -> str | None:
        path = Path(file_path)
        if self._root is not None and not path.is_absolute():
            path = self._root / path
        try:
            return path.read_text(encoding=self._encoding)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Skipping unreadable source %s: %s", path, e)
            return None


class InMemorySourceProvider:
    """Serve SQL text from a mapping of file path to content."""

    def __init__(self, sources: Mapping[str, str] | None = None):
        self._sources = dict(sources or {})

    def add(self, file_path: str, text: str) -> None:
        self._sources[file_path] = text

    def read_text(self, file_path: str) -> str | None:
        return self._sources.get(file_path)


class CachingSourceProvider:
    """Read each file at most once until cleared."""

    def __init__(self, provider: SourceTextProvider):
        self._provider = provider
        self._cache: dict[str, str | None] = {}

    def read_text(self, file_path: str) -> str | None:
        if file_path not in self._cache:
            self._cache[file_path] = self._provider.read_text(file_path)
        return self._cache[file_path]

    def clear(self) -> None:
        self._cache.clear()


# =============================================================================
# Text scanning helpers
# =============================================================================


def strip_sql_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving string literals intact.

    Newlines inside removed comments are kept so line numbers stay stable.
    """
    out: list[str] = []
    i = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        if ch in ("'", '"'):
            end = _skip_quoted(sql, i, ch)
            out.append(sql[i:end])
            i = end
        elif ch == "-" and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = length if newline == -1 else newline
        elif ch == "/" and sql.startswith("/*", i):
            close = sql.find("*/", i + 2)
            end = length if close == -1 else close + 2
            out.append("\n" * sql.count("\n", i, end))
            i = end
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _skip_quoted(sql: str, start: int, quote: str) -> int:
    """Index just past the quoted run starting at ``start``."""
    i = start + 1
    while i < len(sql):
        if sql[i] == quote:
            if i + 1 < len(sql) and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return len(sql)


def find_matching_paren(sql: str, open_index: int) -> int:
    """Index of the parenthesis closing the one at ``open_index``, or -1."""
    depth = 0
    i = open_index
    while i < len(sql):
        ch = sql[i]
        if ch in ("'", '"', "`"):
            i = _skip_quoted(sql, i, ch)
            continue
        if ch == "[":
            close = sql.find("]", i)
            i = len(sql) if close == -1 else close + 1
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _normalize_name(raw: str) -> str | None:
    name = strip_identifier_quotes(raw).strip().lower()
    if not name or name in SQL_RESERVED_WORDS:
        return None
    return name


# =============================================================================
# Strategies
# =============================================================================


class StructureStrategy(ABC):
    """One step of the CTE/alias recovery cascade."""

    name: str = "strategy"

    @abstractmethod
    def extract(self, sql: str) -> set[str] | None:
        """Extract lowercase names from SQL text.

        Returns:
            The names found, or None when the strategy could not process
            the text at all
        """
        ...


class SqlglotCteStrategy(StructureStrategy):
    """Collect ``WITH`` clause names from a sqlglot AST.

    Each dialect is tried in order until one parses the whole text.
    """

    name = "ast"

    def __init__(self, dialects: Iterable[str] = ("postgres",)):
        self._dialects = tuple(dialects)

    def extract(self, sql: str) -> set[str] | None:
        for dialect in self._dialects:
            try:
                statements = sqlglot.parse(sql, read=dialect)
            except (ParseError, TokenError) as e:
                logger.debug("sqlglot could not parse SQL as %s: %s", dialect, e)
                continue
            except ValueError as e:
                logger.debug("Skipping unknown sqlglot dialect %r: %s", dialect, e)
                continue

            names: set[str] = set()
            for statement in statements:
                if statement is None:
                    continue
                for cte in statement.find_all(exp.CTE):
                    name = _normalize_name(cte.alias_or_name)
                    if name:
                        names.add(name)
            return names
        return None


class RegexCteStrategy(StructureStrategy):
    """Find ``WITH [RECURSIVE] name [(cols)] AS (`` and the CTEs chained after it."""

    name = "regex"

    _WITH = re.compile(
        rf"\bWITH\s+(?:RECURSIVE\s+)?({_IDENTIFIER})\s*(?:\([^()]*\)\s*)?AS\s*(?:(?:NOT\s+)?MATERIALIZED\s*)?\(",
        re.IGNORECASE,
    )
    _CHAINED = re.compile(
        rf"\s*,\s*({_IDENTIFIER})\s*(?:\([^()]*\)\s*)?AS\s*(?:(?:NOT\s+)?MATERIALIZED\s*)?\(",
        re.IGNORECASE,
    )

    def extract(self, sql: str) -> set[str] | None:
        names: set[str] = set()
        for match in self._WITH.finditer(sql):
            name = _normalize_name(match.group(1))
            if name:
                names.add(name)

            close = find_matching_paren(sql, match.end() - 1)
            while close != -1:
                chained = self._CHAINED.match(sql, close + 1)
                if not chained:
                    break
                name = _normalize_name(chained.group(1))
                if name:
                    names.add(name)
                close = find_matching_paren(sql, chained.end() - 1)
        return names


class SubqueryAliasStrategy(StructureStrategy):
    """Collect aliases of parenthesized subqueries.

    Matches ``(SELECT ...) AS alias`` and ``(SELECT ...) alias`` at any
    nesting depth, including derived tables in ``UPDATE ... FROM (...) AS
    alias``. Parentheses are balanced explicitly so subqueries may span
    many lines and contain nested subqueries.
    """

    name = "subquery_alias"

    _SUBQUERY_START = re.compile(r"\s*(?:SELECT|WITH|VALUES)\b", re.IGNORECASE)
    # A bare alias must sit on the same line as the closing paren.
    _ALIAS = re.compile(rf"(?:\s*AS\s+|[ \t]*)({_IDENTIFIER})", re.IGNORECASE)

    def extract(self, sql: str) -> set[str] | None:
        aliases: set[str] = set()
        index = sql.find("(")
        while index != -1:
            if self._SUBQUERY_START.match(sql, index + 1):
                close = find_matching_paren(sql, index)
                if close != -1:
                    alias = self._ALIAS.match(sql, close + 1)
                    if alias:
                        name = _normalize_name(alias.group(1))
                        if name:
                            aliases.add(name)
            index = sql.find("(", index + 1)
        return aliases


# =============================================================================
# Extractor
# =============================================================================


@dataclass(frozen=True)
class CteRecovery:
    """CTE names and the strategy that produced them."""

    names: frozenset[str] = field(default_factory=frozenset)
    strategy: str | None = None


class SqlStructureExtractor:
    """Run the CTE strategy chain and the alias strategies over SQL text.

    Example:
        >>> extractor = SqlStructureExtractor()
        >>> sorted(extractor.extract_ctes_and_aliases(
        ...     "WITH recent AS (SELECT * FROM orders) "
        ...     "SELECT * FROM (SELECT * FROM recent) AS r"
        ... ))
        ['r', 'recent']
    """

    def __init__(
        self,
        cte_strategies: list[StructureStrategy] | None = None,
        alias_strategies: list[StructureStrategy] | None = None,
        dialects: Iterable[str] = ("postgres",),
    ):
        self._cte_strategies = cte_strategies or [
            SqlglotCteStrategy(dialects),
            RegexCteStrategy(),
        ]
        self._alias_strategies = alias_strategies or [SubqueryAliasStrategy()]

    def extract_ctes(self, sql: str, label: str = "<sql>") -> CteRecovery:
        """Run CTE strategies in order until one yields names."""
        text = strip_sql_comments(sql)
        for position, strategy in enumerate(self._cte_strategies):
            names = strategy.extract(text)
            if names:
                return CteRecovery(frozenset(names), strategy.name)

            remaining = self._cte_strategies[position + 1:]
            if remaining:
                reason = "failed" if names is None else "found no CTEs"
                logger.debug(
                    "CTE %s strategy %s for %s; using %s fallback",
                    strategy.name,
                    reason,
                    label,
                    remaining[0].name,
                )
        return CteRecovery()

    def extract_aliases(self, sql: str) -> set[str]:
        text = strip_sql_comments(sql)
        aliases: set[str] = set()
        for strategy in self._alias_strategies:
            aliases |= strategy.extract(text) or set()
        return aliases

    def extract_ctes_and_aliases(self, sql: str) -> set[str]:
        """All names in the text that must never become table nodes."""
        return set(self.extract_ctes(sql).names) | self.extract_aliases(sql)
