"""
Lightweight SQL reference extractor (no AST).

Finds the tables and columns a SQL string touches using a literal- and
parenthesis-aware scanner plus a small tokenizer.  The result feeds the
schema validator, the column-access enforcer and the masking transform.

What it understands:
  - string literals ('..', with doubled or backslash-escaped quotes) and
    quoted identifiers ("..", `..`)
  - top-level UNION / UNION ALL / INTERSECT / EXCEPT segments
  - FROM comma lists and every JOIN, with ``AS alias`` or bare aliases
  - SELECT list, WHERE, JOIN ... ON / USING, GROUP BY, HAVING, ORDER BY
  - parenthesised sub-queries, extracted recursively in a nested scope
    that can still see the enclosing tables (correlated references)

Two views of a string are used throughout:

  ``lit``  same length, string/identifier interiors blanked
  ``top``  same length, additionally blanks everything inside parentheses

so a regex over ``top`` only ever matches top-level keywords and the match
offsets are valid in the original text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.governance.catalog import Catalog

DERIVED_TABLE = "__derived__"
_PLACEHOLDER = "__subquery__"
_QUOTES = "'\"`"


class Clause(str, Enum):
    SELECT = "select"
    WHERE = "where"
    JOIN_ON = "join_on"
    GROUP_BY = "group_by"
    HAVING = "having"
    WINDOW = "window"
    ORDER_BY = "order_by"


# Words that can never be a bare column name.
_RESERVED = frozenset("""
    ALL AND ANY AS ASC BOTH CASE CAST CROSS CURRENT_DATE CURRENT_TIME
    CURRENT_TIMESTAMP CURRENT_USER DESC DISTINCT ELSE END FALSE FROM FULL GROUP
    HAVING ILIKE IN INNER IS JOIN LEFT LIKE LIMIT LOCALTIME LOCALTIMESTAMP NOT
    NULL OFFSET ON OR ORDER OUTER RIGHT SELECT SESSION_USER SIMILAR SOME THEN
    TRUE UNION USING WHEN WHERE
""".split())

# Keywords PostgreSQL also accepts as column names (``SELECT range FROM t``).
_SOFT_KEYWORDS = frozenset("""
    BETWEEN BY CURRENT DIV ELSEIF ESCAPE EXISTS FILTER FOLLOWING IF INTERVAL
    OVER PARTITION PRECEDING RANGE REGEXP RLIKE ROW ROWS SEPARATOR UNBOUNDED
    UNKNOWN WITHIN XOR
""".split())

_KEYWORDS = _RESERVED | _SOFT_KEYWORDS

# Prefixes of typed / introduced literals: DATE '2024-01-01', E'..', X'ff'
_TYPED_LITERAL = frozenset("""
    DATE TIME TIMETZ TIMESTAMP TIMESTAMPTZ INTERVAL E N X B U BINARY JSON
""".split())

_NON_ALIAS = _KEYWORDS | frozenset("""
    NATURAL WINDOW FETCH FOR TABLESAMPLE WITH LATERAL STRAIGHT_JOIN USE FORCE
    IGNORE INTERSECT EXCEPT SET VALUES
""".split())

# ── Patterns ─────────────────────────────────────────────

_IDENT_PART = r'(?:"(?:[^"]|"")*"|`[^`]*`|\[[^\]]*\]|[^\s(),.;=<>!+\-*/%|"`\[\]\']+)'
_NAME = rf"{_IDENT_PART}(?:\s*\.\s*{_IDENT_PART})*"

_NAME_RE = re.compile(_NAME)
_IDENT_PART_RE = re.compile(_IDENT_PART)
_ALIAS_RE = re.compile(rf"^\s*(?:AS\s+)?(?P<alias>{_IDENT_PART})", re.IGNORECASE)
_QUALIFIED_STAR_RE = re.compile(rf"(?P<q>{_NAME})\s*\.\s*\*")

_SET_OP_RE = re.compile(r"\b(?:UNION|INTERSECT|EXCEPT)(?:\s+(?:ALL|DISTINCT))?\b", re.IGNORECASE)
_SUBQUERY_START_RE = re.compile(r"\(\s*(?:SELECT|WITH)\b", re.IGNORECASE)
_CLAUSE_RE = re.compile(
    r"\b(SELECT|FROM|WHERE|GROUP\s+BY|HAVING|WINDOW|ORDER\s+BY|LIMIT|OFFSET|FETCH)\b",
    re.IGNORECASE,
)
_JOIN_RE = re.compile(
    r"\b(?:NATURAL\s+)?(?:(?:INNER|CROSS|LEFT|RIGHT|FULL)(?:\s+OUTER)?\s+)?JOIN\b|\bSTRAIGHT_JOIN\b",
    re.IGNORECASE,
)
_ON_USING_RE = re.compile(r"\b(ON|USING)\b", re.IGNORECASE)
_AS_RE = re.compile(r"\bAS\b", re.IGNORECASE)
_CTE_RE = re.compile(
    rf"(?:\bWITH\s+(?:RECURSIVE\s+)?|,\s*)(?P<name>{_IDENT_PART})\s*(?:\(\s*\)\s*)?AS\s*(?:NOT\s+)?(?:MATERIALIZED\s+)?\(",
    re.IGNORECASE,
)
_TARGET_RE = re.compile(
    rf"^\s*(?:DESCRIBE|DESC|INSERT\s+(?:IGNORE\s+)?INTO|REPLACE\s+INTO|UPDATE)\s+(?P<name>{_NAME})",
    re.IGNORECASE,
)
_DISTINCT_ON_RE = re.compile(r"^\s*DISTINCT\s+ON\s*\(", re.IGNORECASE)
_SELECT_MOD_RE = re.compile(
    r"^\s*(?:(?:DISTINCT|ALL)\b\s*)?(?:TOP\s*(?:\(\s*\d+\s*\)|\d+)(?:\s+PERCENT)?(?:\s+WITH\s+TIES)?\s*)?",
    re.IGNORECASE,
)
_SORT_SUFFIX_RE = re.compile(r"(?:\s+(?:ASC|DESC))?(?:\s+NULLS\s+(?:FIRST|LAST))?\s*$", re.IGNORECASE)


def _token_re(backslash: bool) -> re.Pattern[str]:
    body = r"(?:[^'\\]|\\.|'')*" if backslash else r"(?:[^']|'')*"
    return re.compile(
        rf"""
        (?P<string>'{body}'?)
      | (?P<qident>"(?:[^"]|"")*"?|`[^`]*`?|\[[^\]]*\]?)
      | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)
      | (?P<ident>[^\W\d]\w*)
      | (?P<param>[@$]+\w*|:\w+)
      | (?P<op>::|<=>|<>|!=|<=|>=|\|\||->>|->|[-+*/%=<>!~^&|?])
      | (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<comma>,)
      | (?P<dot>\.)
      | (?P<other>\S)
        """,
        re.VERBOSE | re.DOTALL,
    )


_TOKEN_RES = {True: _token_re(True), False: _token_re(False)}
_BACKSLASH_QUOTE_RE = re.compile(r"\\['\"]")


# ── Result types ─────────────────────────────────────────

@dataclass(frozen=True)
class TableRef:
    """A table read by the query (FROM / JOIN / DESCRIBE target).

    ``column_aliases`` is the FROM-item rename list of ``users u(a, b)``:
    the table's first columns are visible under these names instead.
    """
    name: str
    alias: str | None = None
    column_aliases: tuple[str, ...] = ()


@dataclass(eq=False)
class Scope:
    """Name-resolution scope of one SELECT segment."""

    parent: Scope | None = None
    tables: list[TableRef] = field(default_factory=list)
    derived: set[str] = field(default_factory=set)
    query_aliases: set[str] = field(default_factory=set)
    order_aliases: set[str] = field(default_factory=set)

    def chain(self) -> list[Scope]:
        scopes: list[Scope] = []
        s: Scope | None = self
        while s is not None:
            scopes.append(s)
            s = s.parent
        return scopes

    def table_names(self) -> list[str]:
        return _unique(t.name for t in self.tables)

    def visible_table_names(self) -> list[str]:
        return _unique(name for s in self.chain() for name in s.table_names())

    def has_derived_sources(self) -> bool:
        return any(s.derived for s in self.chain())

    def renamed_columns(self) -> set[str]:
        """Lower-cased FROM-item column aliases visible from this scope."""
        return {a.lower() for s in self.chain() for t in s.tables for a in t.column_aliases}

    def _find(self, qualifier: str) -> TableRef | str | None:
        q = strip_quotes(qualifier).lower()
        for s in self.chain():
            for t in s.tables:
                if t.alias and t.alias.lower() == q:
                    return t
            if q in s.derived:
                return DERIVED_TABLE
            for t in s.tables:
                if names_match(t.name, q):
                    return t
        return None

    def table_ref(self, qualifier: str) -> TableRef | None:
        """The FROM item *qualifier* names, or ``None`` (unknown or derived)."""
        found = self._find(qualifier)
        return found if isinstance(found, TableRef) else None

    def resolve(self, qualifier: str) -> str | None:
        """Map a column qualifier (alias or table name) to a table name.

        Returns ``DERIVED_TABLE`` for derived tables / CTEs and ``None``
        when the qualifier is not visible in this scope.
        """
        found = self._find(qualifier)
        return found.name if isinstance(found, TableRef) else found


@dataclass(frozen=True)
class ColumnRef:
    """A column reference.  ``table`` is the qualifier as written, if any.

    ``column == "*"`` is a whole-row reference inside an expression
    (``row_to_json(u.*)``).
    """
    table: str | None
    column: str
    clause: Clause
    bare: bool = False       # the whole GROUP BY / ORDER BY item is this name
    quoted: bool = False     # double-quoted: identifier or string depending on dialect
    keyword: bool = False    # a non-reserved keyword; may be a column or the keyword
    scope: Scope | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Wildcard:
    qualifier: str | None
    scope: Scope = field(compare=False, repr=False)
    position: int | None = field(default=None, compare=False)


@dataclass
class Projection:
    """One top-level SELECT item: its output name and the columns feeding it."""
    position: int
    name: str | None
    refs: list[ColumnRef] = field(default_factory=list)
    scope: Scope | None = field(default=None, compare=False, repr=False)


@dataclass
class Extraction:
    tables: list[TableRef] = field(default_factory=list)
    select_items: list[str] = field(default_factory=list)
    column_refs: list[ColumnRef] = field(default_factory=list)
    select_aliases: set[str] = field(default_factory=set)
    last_select_aliases: set[str] = field(default_factory=set)
    wildcards: list[Wildcard] = field(default_factory=list)
    projections: list[Projection] = field(default_factory=list)
    segments: list[Scope] = field(default_factory=list)

    def table_names(self) -> list[str]:
        return _unique(t.name for t in self.tables)

    def merged(self, other: Extraction) -> Extraction:
        return Extraction(
            tables=self.tables + [t for t in other.tables if t not in self.tables],
            select_items=self.select_items + [i for i in other.select_items if i not in self.select_items],
            column_refs=self.column_refs + other.column_refs,
            select_aliases=self.select_aliases | other.select_aliases,
            last_select_aliases=self.last_select_aliases | other.last_select_aliases,
            wildcards=self.wildcards + other.wildcards,
            projections=self.projections + other.projections,
            segments=self.segments + other.segments,
        )


@dataclass(frozen=True)
class Token:
    kind: str
    text: str

    @property
    def upper(self) -> str:
        return self.text.upper()


class ReferenceExtractor(Protocol):
    """Anything that can turn SQL text into an :class:`Extraction`."""

    def extract(self, sql: str) -> Extraction: ...


class TextReferenceExtractor:
    """Default extractor backed by the text scanner in this module."""

    def extract(self, sql: str) -> Extraction:
        return extract(sql)


# ── Small helpers ────────────────────────────────────────

def _unique(items) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


def strip_quotes(part: str) -> str:
    part = part.strip()
    if len(part) >= 2 and part[0] == part[-1] and part[0] in "\"`":
        return part[1:-1].replace(part[0] * 2, part[0])
    if len(part) >= 2 and part[0] == "[" and part[-1] == "]":
        return part[1:-1]
    return part


def normalize_name(name: str) -> str:
    """``"public"."users"`` -> ``public.users``."""
    return ".".join(strip_quotes(p) for p in _IDENT_PART_RE.findall(name))


def _short(name: str) -> str:
    return name.lower().rsplit(".", 1)[-1]


def names_match(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a == b or _short(a) == _short(b)


def match_table_key(name: str, keys) -> str | None:
    """Find the key in *keys* (lower-cased table names) that *name* refers to."""
    key = name.lower()
    if key in keys:
        return key
    short = _short(key)
    if short in keys:
        return short
    for k in keys:
        if _short(k) == short:
            return k
    return None


# ── Scanning ─────────────────────────────────────────────

def clean_sql(sql: str) -> str:
    """Strip ``--`` and ``/* */`` comments outside literals and collapse whitespace."""
    out: list[str] = []
    pending_space = False
    quote: str | None = None
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(sql[i + 1])
                i += 2
                continue
            if ch == quote:
                if i + 1 < n and sql[i + 1] == quote:
                    out.append(quote)
                    i += 2
                    continue
                quote = None
            i += 1
            continue
        if sql.startswith("--", i):
            j = sql.find("\n", i)
            i = n if j == -1 else j
            pending_space = True
            continue
        if sql.startswith("/*", i):
            j = sql.find("*/", i + 2)
            i = n if j == -1 else j + 2
            pending_space = True
            continue
        if ch.isspace():
            pending_space = True
            i += 1
            continue
        if pending_space and out:
            out.append(" ")
        pending_space = False
        if ch in _QUOTES:
            quote = ch
        out.append(ch)
        i += 1
    return "".join(out).strip()


def scan(text: str, backslash: bool = True) -> tuple[str, str]:
    """Return the ``(lit, top)`` views of *text* (see module docstring)."""
    lit = list(text)
    top = list(text)
    depth = 0
    quote: str | None = None
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if quote:
            if backslash and ch == "\\" and quote != "`" and i + 1 < n:
                lit[i] = lit[i + 1] = top[i] = top[i + 1] = " "
                i += 2
                continue
            if ch == quote:
                if i + 1 < n and text[i + 1] == quote:
                    lit[i] = lit[i + 1] = top[i] = top[i + 1] = " "
                    i += 2
                    continue
                quote = None
                if depth:
                    top[i] = " "
            else:
                lit[i] = top[i] = " "
            i += 1
            continue
        if ch in _QUOTES:
            quote = ch
            if depth:
                top[i] = " "
        elif ch == "(":
            if depth:
                top[i] = " "
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
            if depth:
                top[i] = " "
        elif depth:
            top[i] = " "
        i += 1
    return "".join(lit), "".join(top)


def segment_spans(top: str) -> list[tuple[int, int]]:
    """Spans of the top-level set-operation segments (UNION etc.)."""
    spans: list[tuple[int, int]] = []
    pos = 0
    for m in _SET_OP_RE.finditer(top):
        spans.append((pos, m.start()))
        pos = m.end()
    spans.append((pos, len(top)))
    return spans


def subquery_spans(lit: str) -> list[tuple[int, int]]:
    """Content spans (inside the parentheses) of the outermost sub-queries."""
    spans: list[tuple[int, int]] = []
    stack: list[tuple[int, bool]] = []
    for i, ch in enumerate(lit):
        if ch == "(":
            stack.append((i, bool(_SUBQUERY_START_RE.match(lit, i))))
        elif ch == ")" and stack:
            start, is_sub = stack.pop()
            if is_sub and not any(sub for _, sub in stack):
                spans.append((start + 1, i))
    return spans


def _prev_word(top: str, pos: int) -> str:
    m = re.search(r"(\w+)\s*$", top[:pos])
    return m.group(1).upper() if m else ""


def _clause_marks(top: str) -> list[tuple[str, int, int]]:
    marks: list[tuple[str, int, int]] = []
    seen: set[str] = set()
    for m in _CLAUSE_RE.finditer(top):
        name = re.sub(r"\s+", " ", m.group(1).upper())
        if name in seen:
            continue
        if name == "FROM" and _prev_word(top, m.start()) == "DISTINCT":
            continue
        seen.add(name)
        marks.append((name, m.start(), m.end()))
    return marks


def clause_keywords(top: str) -> dict[str, int]:
    """Start offsets of the top-level clause keywords of one segment."""
    return {name: start for name, start, _ in _clause_marks(top)}


def clause_spans(top: str) -> dict[str, tuple[int, int]]:
    """Body spans of the top-level clauses of one segment, keyed by keyword."""
    marks = _clause_marks(top)
    spans: dict[str, tuple[int, int]] = {}
    for idx, (name, _start, end) in enumerate(marks):
        stop = marks[idx + 1][1] if idx + 1 < len(marks) else len(top)
        spans[name] = (end, stop)
    return spans


def _split_top(text: str, top: str, sep: str = ",") -> list[tuple[str, str]]:
    parts: list[tuple[str, str]] = []
    pos = 0
    for i, ch in enumerate(top):
        if ch == sep:
            parts.append((text[pos:i], top[pos:i]))
            pos = i + 1
    parts.append((text[pos:], top[pos:]))
    return [(a, b) for a, b in parts if a.strip()]


def _unwrap(text: str, backslash: bool) -> str:
    """Drop parentheses that wrap the entire text: ``(SELECT ...)`` -> ``SELECT ...``."""
    text = text.strip()
    while text.startswith("(") and text.endswith(")"):
        _, top = scan(text, backslash)
        if top[1:-1].strip():
            break
        text = text[1:-1].strip()
    return text


def _with_placeholders(text: str, spans: list[tuple[int, int]]) -> str:
    for a, b in reversed(spans):
        text = text[:a] + _PLACEHOLDER + text[b:]
    return text


def tokenize(text: str, backslash: bool = True) -> list[Token]:
    return [Token(m.lastgroup, m.group()) for m in _TOKEN_RES[backslash].finditer(text) if m.lastgroup]


# ── Extraction ───────────────────────────────────────────

class _Collector:
    def __init__(self, backslash: bool):
        self.backslash = backslash
        self.result = Extraction()

    # -- column references ---------------------------------

    def refs_from_text(self, text: str, clause: Clause, scope: Scope, *, item: bool = False) -> list[ColumnRef]:
        tokens = tokenize(text, self.backslash)
        bare = item and _is_single_name(tokens)
        refs = _refs_from_tokens(tokens, clause, scope, bare)
        self.result.column_refs.extend(refs)
        return refs

    def refs_from_items(self, text: str, top: str, clause: Clause, scope: Scope) -> None:
        for itext, _ in _split_top(text, top):
            itext = _SORT_SUFFIX_RE.sub("", itext).strip()
            if not itext or itext.isdigit():
                continue
            self.refs_from_text(itext, clause, scope, item=True)

    # -- structure ----------------------------------------

    def parse_query(self, sql: str, parent: Scope | None, top_level: bool) -> None:
        sql = _unwrap(sql, self.backslash)
        _, top = scan(sql, self.backslash)
        spans = [(a, b) for a, b in segment_spans(top) if sql[a:b].strip()]
        query_aliases: set[str] = set()
        order_aliases: set[str] = set()
        for idx, (a, b) in enumerate(spans):
            scope = Scope(parent=parent, query_aliases=query_aliases, order_aliases=order_aliases)
            self.parse_segment(
                _unwrap(sql[a:b], self.backslash), scope,
                is_last=idx == len(spans) - 1, top_level=top_level,
            )
        if top_level:
            self.result.select_aliases |= query_aliases
            self.result.last_select_aliases |= order_aliases

    def parse_segment(self, seg: str, scope: Scope, *, is_last: bool, top_level: bool) -> None:
        lit, _ = scan(seg, self.backslash)
        sub_spans = subquery_spans(lit)
        subqueries = [seg[a:b] for a, b in sub_spans]
        work = _with_placeholders(seg, sub_spans)
        _, top = scan(work, self.backslash)
        clauses = clause_spans(top)

        select_at = clauses["SELECT"][0] if "SELECT" in clauses else len(top)
        for m in _CTE_RE.finditer(top[:select_at]):
            scope.derived.add(normalize_name(m.group("name")).lower())

        target = _TARGET_RE.match(work)
        if target and target.group("name").upper() not in _NON_ALIAS:
            scope.tables.append(TableRef(name=normalize_name(target.group("name"))))

        on_texts: list[str] = []
        if "FROM" in clauses:
            a, b = clauses["FROM"]
            on_texts = _parse_from(work[a:b], top[a:b], scope, self.backslash)

        self.result.tables.extend(t for t in scope.tables if t not in self.result.tables)
        if top_level:
            self.result.segments.append(scope)

        for sub in subqueries:
            self.parse_query(sub, scope, top_level=False)

        if "SELECT" in clauses:
            a, b = clauses["SELECT"]
            self.parse_select_list(work[a:b], top[a:b], scope, is_last=is_last, top_level=top_level)

        for text in on_texts:
            self.refs_from_text(text, Clause.JOIN_ON, scope)
        for name, clause in (("WHERE", Clause.WHERE), ("HAVING", Clause.HAVING), ("WINDOW", Clause.WINDOW)):
            if name in clauses:
                a, b = clauses[name]
                self.refs_from_text(work[a:b], clause, scope)
        for name, clause in (("GROUP BY", Clause.GROUP_BY), ("ORDER BY", Clause.ORDER_BY)):
            if name in clauses:
                a, b = clauses[name]
                self.refs_from_items(work[a:b], top[a:b], clause, scope)

    def parse_select_list(self, text: str, top: str, scope: Scope, *, is_last: bool, top_level: bool) -> None:
        m = _DISTINCT_ON_RE.match(text)
        if m:
            close = top.find(")", m.end())
            if close == -1:
                close = len(text)
            self.refs_from_text(text[m.end():close], Clause.SELECT, scope)
            text, top = text[close + 1:], top[close + 1:]
        m = _SELECT_MOD_RE.match(top)
        if m and m.end():
            text, top = text[m.end():], top[m.end():]

        for position, (itext, itop) in enumerate(_split_top(text, top)):
            item = itext.strip()
            if top_level:
                self.result.select_items.append(item)
            if item == "*":
                self.result.wildcards.append(Wildcard(None, scope, position))
                continue
            star = _QUALIFIED_STAR_RE.fullmatch(item)
            if star:
                self.result.wildcards.append(Wildcard(normalize_name(star.group("q")), scope, position))
                continue

            expr, alias = _split_alias(itext, itop, self.backslash)
            if alias:
                key = alias.lower()
                scope.query_aliases.add(key)
                if is_last:
                    scope.order_aliases.add(key)
            tokens = tokenize(expr, self.backslash)
            refs = _refs_from_tokens(tokens, Clause.SELECT, scope, False)
            self.result.column_refs.extend(refs)
            if top_level:
                name = alias
                if name is None and _is_single_name(tokens, allow_path=True):
                    name = strip_quotes(tokens[-1].text)
                self.result.projections.append(Projection(
                    position=position, name=name.lower() if name else None, refs=refs, scope=scope,
                ))


def _parse_from(text: str, top: str, scope: Scope, backslash: bool) -> list[str]:
    """Register the FROM / JOIN tables of *text* on *scope*; return the ON / USING bodies."""
    on_texts: list[str] = []
    joins = list(_JOIN_RE.finditer(top))
    first_end = joins[0].start() if joins else len(text)
    for itext, _ in _split_top(text[:first_end], top[:first_end]):
        on_texts.extend(_add_table_item(itext, scope, backslash))
    for idx, m in enumerate(joins):
        end = joins[idx + 1].start() if idx + 1 < len(joins) else len(text)
        piece, piece_top = text[m.end():end], top[m.end():end]
        cond = _ON_USING_RE.search(piece_top)
        on_texts.extend(_add_table_item(piece[:cond.start()] if cond else piece, scope, backslash))
        if cond:
            on_texts.append(piece[cond.end():])
    return on_texts


def _add_table_item(item: str, scope: Scope, backslash: bool) -> list[str]:
    item = re.sub(r"^\s*(?:LATERAL|ONLY)\s+", "", item, flags=re.IGNORECASE).strip()
    if not item:
        return []
    if item.startswith("("):
        _, top = scan(item, backslash)
        close = top.find(")")
        if close == -1:
            close = len(item)
        inner, rest = item[1:close], item[close + 1:]
        if inner.strip() == _PLACEHOLDER:
            alias, _ = _table_alias(rest, backslash)
            if alias:
                scope.derived.add(alias.lower())
            return []
        _, inner_top = scan(inner, backslash)
        return _parse_from(inner, inner_top, scope, backslash)

    m = _NAME_RE.match(item)
    if not m:
        return []
    rest = item[m.end():]
    if rest.lstrip().startswith("("):
        # table-valued function: treat its alias as a derived source
        _, top = scan(rest, backslash)
        close = top.find(")")
        alias = _table_alias(rest[close + 1:], backslash)[0] if close != -1 else None
        if alias:
            scope.derived.add(alias.lower())
        return []
    name = normalize_name(m.group())
    alias, renamed = _table_alias(rest, backslash)
    if any(name.lower() in s.derived for s in scope.chain()):
        # reference to a CTE
        scope.derived.add((alias or name).lower())
        return []
    scope.tables.append(TableRef(name=name, alias=alias, column_aliases=renamed))
    return []


def _table_alias(rest: str, backslash: bool = True) -> tuple[str | None, tuple[str, ...]]:
    """``AS u(a, b)`` -> ``("u", ("a", "b"))``."""
    m = _ALIAS_RE.match(rest)
    if not m:
        return None, ()
    alias = m.group("alias")
    if alias.upper() in _NON_ALIAS:
        return None, ()
    after = rest[m.end():].lstrip()
    renamed: tuple[str, ...] = ()
    if after.startswith("("):
        _, top = scan(after, backslash)
        close = top.find(")")
        body = after[1:close] if close != -1 else after[1:]
        renamed = tuple(strip_quotes(p) for p in _IDENT_PART_RE.findall(body))
    return strip_quotes(alias), renamed


def _split_alias(text: str, top: str, backslash: bool) -> tuple[str, str | None]:
    """Split a SELECT item into ``(expression, alias)``."""
    as_matches = list(_AS_RE.finditer(top))
    if as_matches:
        m = as_matches[-1]
        alias = text[m.end():].strip()
        if alias.startswith("'") and alias.endswith("'") and len(alias) >= 2:
            alias = alias[1:-1]
        return text[:m.start()], strip_quotes(alias) or None

    tokens = tokenize(text, backslash)
    if len(tokens) < 2:
        return text, None
    last, before = tokens[-1], tokens[:-1]
    end = before[-1]
    if last.kind == "string" and len(last.text) >= 2 and last.text.endswith("'"):
        # MySQL / SQLite: SELECT ssn 'x'
        if end.kind == "ident" and end.upper in _TYPED_LITERAL:
            return text, None
        if not (end.kind in ("rparen", "number", "qident") or (
            end.kind == "ident" and (end.upper not in _RESERVED or end.upper == "END")
        )):
            return text, None
        alias = last.text[1:-1].replace("''", "'")
        return text[:text.rfind(last.text)], alias or None
    if last.kind not in ("ident", "qident"):
        return text, None
    if last.kind == "ident" and last.upper in _KEYWORDS:
        return text, None
    if end.kind == "string" and len(before) >= 2 and before[-2].upper == "INTERVAL":
        return text, None                             # INTERVAL '1' DAY
    # `a + b` ends in an operand, `a +` does not
    ends_operand = end.kind in ("rparen", "string", "number", "qident") or (
        end.kind == "ident" and (end.upper not in _KEYWORDS or end.upper == "END")
    )
    if not ends_operand:
        return text, None
    is_expression = (
        any(t.kind in ("lparen", "rparen", "string", "number", "op") for t in before)
        or end.upper == "END"
        or _is_single_name(before, allow_path=True)
    )
    if not is_expression:
        return text, None
    expr = text[:text.rfind(last.text)]
    return expr, strip_quotes(last.text)


def _is_single_name(tokens: list[Token], allow_path: bool = False) -> bool:
    """True when *tokens* are exactly one column name (optionally qualified)."""
    if not tokens:
        return False
    if not allow_path and len(tokens) != 1:
        return False
    for i, tok in enumerate(tokens):
        if i % 2:
            if tok.kind != "dot":
                return False
        elif tok.kind == "qident":
            continue
        elif tok.kind != "ident" or tok.upper in _RESERVED or tok.text == _PLACEHOLDER:
            return False
    return len(tokens) % 2 == 1


def _refs_from_tokens(tokens: list[Token], clause: Clause, scope: Scope, bare: bool) -> list[ColumnRef]:
    refs: list[ColumnRef] = []
    n = len(tokens)
    i = 0
    while i < n:
        tok = tokens[i]
        if tok.kind not in ("ident", "qident"):
            i += 1
            continue
        parts = [tok]
        j = i + 1
        while j + 1 < n and tokens[j].kind == "dot" and (
            tokens[j + 1].kind in ("ident", "qident") or tokens[j + 1].text == "*"
        ):
            parts.append(tokens[j + 1])
            j += 2
        prev = tokens[i - 1] if i > 0 else None
        nxt = tokens[j] if j < n else None
        if not _skip_name(parts, prev, nxt, tokens, i):
            column = strip_quotes(parts[-1].text)
            table = ".".join(strip_quotes(p.text) for p in parts[:-1]) or None
            refs.append(ColumnRef(
                table=table,
                column=column,
                clause=clause,
                bare=bare,
                quoted=len(parts) == 1 and tok.text.startswith('"'),
                keyword=len(parts) == 1 and tok.kind == "ident" and tok.upper in _SOFT_KEYWORDS,
                scope=scope,
            ))
        i = j
    return refs


def _skip_name(parts: list[Token], prev: Token | None, nxt: Token | None, tokens: list[Token], i: int) -> bool:
    if parts[-1].text == "*":
        return False                                  # t.* inside an expression reads the row
    if nxt is not None and nxt.kind == "lparen":
        return True                                   # function name
    if prev is not None and (prev.upper == "AS" or prev.text in ("::", ":")):
        return True                                   # alias, cast target or bind name
    if len(parts) > 1:
        return False
    tok = parts[0]
    if tok.kind == "qident":
        return False
    if tok.upper in _RESERVED or tok.text == _PLACEHOLDER:
        return True
    if nxt is not None and nxt.kind == "string" and tok.upper in _TYPED_LITERAL:
        return True                                   # typed literal: DATE '2024-01-01', E'..'
    if prev is not None and prev.upper == "NULLS" and tok.upper in ("FIRST", "LAST"):
        return True
    if prev is not None and prev.kind == "lparen" and i >= 2 and tokens[i - 2].upper == "EXTRACT":
        return True                                   # EXTRACT(YEAR FROM ...)
    if prev is not None and prev.kind == "string" and i >= 2 and tokens[i - 2].upper == "INTERVAL":
        return True                                   # INTERVAL '1' DAY
    return False


def _extract(sql: str, backslash: bool) -> Extraction:
    collector = _Collector(backslash)
    collector.parse_query(sql, None, top_level=True)
    return collector.result


def extract(sql: str) -> Extraction:
    """Extract table and column references from *sql*.

    When the text contains a backslash before a quote, string boundaries
    depend on the dialect; both readings are extracted and merged so no
    reference hidden by one reading is lost.
    """
    if not sql or not sql.strip():
        return Extraction()
    cleaned = clean_sql(sql)
    result = _extract(cleaned, backslash=True)
    if _BACKSLASH_QUOTE_RE.search(cleaned):
        result = result.merged(_extract(cleaned, backslash=False))
    return result


def segment_tables(segment: str, backslash: bool = True) -> list[TableRef]:
    """FROM / JOIN tables of a single segment, ignoring its sub-queries."""
    lit, _ = scan(segment, backslash)
    work = _with_placeholders(segment, subquery_spans(lit))
    _, top = scan(work, backslash)
    clauses = clause_spans(top)
    scope = Scope()
    if "FROM" in clauses:
        a, b = clauses["FROM"]
        _parse_from(work[a:b], top[a:b], scope, backslash)
    return scope.tables


def candidate_tables(ref: ColumnRef, catalog: Catalog | None = None) -> list[str]:
    """Tables that may own *ref*.

    Qualified references resolve through the alias map.  A bare name in a
    single-table scope belongs to that table; otherwise the catalog picks
    the tables that have the column (innermost scope first).  When nothing
    can be decided every visible table is a candidate.
    """
    scope = ref.scope or Scope()
    if ref.table:
        resolved = scope.resolve(ref.table)
        if resolved == DERIVED_TABLE:
            return []
        return [resolved or ref.table]

    visible = scope.visible_table_names()
    if len(visible) <= 1:
        return visible
    if catalog is not None:
        for s in scope.chain():
            hits = [t for t in s.table_names() if catalog.has_column(t, ref.column)]
            if hits:
                return hits
    return visible


def whole_row_table(ref: ColumnRef, catalog: Catalog | None = None) -> str | None:
    """Table whose entire row *ref* reads, or ``None`` for a plain column.

    ``u.*`` inside an expression and, in PostgreSQL, a bare table name or
    alias used as a value (``to_jsonb(u)``, ``SELECT u FROM users u``) read
    every column.  A bare name that is also a column of a visible catalog
    table is that column.  May return ``DERIVED_TABLE``.
    """
    scope = ref.scope or Scope()
    if ref.column == "*":
        if not ref.table:
            return None
        return scope.resolve(ref.table) or ref.table
    if ref.table or ref.keyword:
        return None
    resolved = scope.resolve(ref.column)
    if resolved is None:
        return None
    if catalog is not None and any(catalog.has_column(t, ref.column) for t in scope.visible_table_names()):
        return None
    return resolved


def source_columns(ref: ColumnRef, table: str, catalog: Catalog | None = None) -> list[str] | None:
    """Names, in *table*, of the column *ref* reads.

    A FROM item with a column-alias list renames the leading columns of its
    table; the catalog's column order maps the new name back.  Returns
    ``None`` when a renamed reference cannot be mapped.
    """
    scope = ref.scope or Scope()
    if ref.table:
        found = scope.table_ref(ref.table)
        items = [found] if found is not None else []
    else:
        items = [t for s in scope.chain() for t in s.tables if names_match(t.name, table)]
    if not any(t.column_aliases for t in items):
        return [ref.column]

    column = ref.column.lower()
    out: list[str] = []
    for t in items:
        renamed = [a.lower() for a in t.column_aliases]
        if column not in renamed:
            out.append(ref.column)
            continue
        ordered = catalog.ordered_columns(t.name) if catalog is not None else None
        idx = renamed.index(column)
        if ordered is None or idx >= len(ordered):
            return None
        out.append(ordered[idx])
    return _unique(out)


def wildcard_tables(wc: Wildcard) -> list[str]:
    """Real tables a wildcard expands over; derived sources are left out."""
    if wc.qualifier is None:
        return wc.scope.table_names()
    resolved = wc.scope.resolve(wc.qualifier)
    if resolved == DERIVED_TABLE:
        return []
    return [resolved or wc.qualifier]
