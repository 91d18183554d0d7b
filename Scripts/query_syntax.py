#!/usr/bin/env python3
"""
A small Lucene-flavoured query language compiled onto SQLite FTS5.

Supported syntax:
- bare terms and `"quoted phrases"`
- `+term` (required), `-term` (prohibited), `AND`, `OR`, `NOT`
- parentheses for grouping
- `field:value` for `name`, `description`, `content` (text) and
  `lang`, `category` (exact facets, top level only)
- backslash escapes any character

Text that went through `Tokenizer.tokenize_and_escape` always compiles.
"""

from __future__ import annotations

import dataclasses
import re
from typing import List, Sequence, Tuple

TEXT_FIELDS = ("name", "description", "content")
FACET_FIELDS = ("lang", "category")
KNOWN_FIELDS = TEXT_FIELDS + FACET_FIELDS
OPERATORS = ("AND", "OR", "NOT")
UNSUPPORTED_CHARS = frozenset("{}[]^~*?/!")
TERM_TOKEN_RE = re.compile(r"[^\W_]+")

MUST = "must"
SHOULD = "should"
MUST_NOT = "must_not"


class QuerySyntaxError(ValueError):
    """Raised when raw query text cannot be compiled."""


@dataclasses.dataclass
class Lexeme:
    kind: str  # word, phrase, lparen, rparen, op
    text: str = ""
    field: str | None = None
    occur: str | None = None
    position: int = 0


@dataclasses.dataclass
class Term:
    text: str
    field: str | None = None
    phrase: bool = False


@dataclasses.dataclass
class Group:
    clauses: List["Clause"]
    field: str | None = None


@dataclasses.dataclass
class Clause:
    occur: str
    node: Term | Group


@dataclasses.dataclass
class CompiledQuery:
    match: str | None
    required_facets: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
    excluded_facets: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
    has_text: bool = False

    @property
    def matches_nothing(self) -> bool:
        if self.match is not None:
            return False
        return self.has_text or not self.required_facets


class _Lexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def error(self, message: str, position: int | None = None) -> QuerySyntaxError:
        at = self.pos if position is None else position
        return QuerySyntaxError(f"{message} at position {at}")

    def lex(self) -> List[Lexeme]:
        out: List[Lexeme] = []
        text = self.text
        while self.pos < len(text):
            ch = text[self.pos]
            if ch.isspace():
                self.pos += 1
                continue
            if ch == "(":
                out.append(Lexeme("lparen", position=self.pos))
                self.pos += 1
                continue
            if ch == ")":
                out.append(Lexeme("rparen", position=self.pos))
                self.pos += 1
                continue
            start = self.pos
            occur = None
            if ch in "+-":
                occur = MUST if ch == "+" else MUST_NOT
                self.pos += 1
                if self.pos >= len(text) or text[self.pos].isspace() or text[self.pos] in ")+-":
                    raise self.error(f"dangling '{ch}'", start)
            if text[self.pos] == "(":
                out.append(Lexeme("lparen", occur=occur, position=start))
                self.pos += 1
                continue
            if text[self.pos] == '"':
                out.append(Lexeme("phrase", text=self._phrase(), occur=occur, position=start))
                continue
            out.extend(self._word(occur, start))
        return out

    def _phrase(self) -> str:
        start = self.pos
        self.pos += 1
        chars: List[str] = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\":
                if self.pos + 1 >= len(self.text):
                    raise self.error("dangling escape")
                chars.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            if ch == '"':
                self.pos += 1
                return "".join(chars)
            chars.append(ch)
            self.pos += 1
        raise self.error("unterminated phrase", start)

    def _word(self, occur: str | None, start: int) -> List[Lexeme]:
        text = self.text
        chars: List[str] = []
        escaped_any = False
        field = None
        while self.pos < len(text):
            ch = text[self.pos]
            if ch.isspace() or ch in '()"':
                break
            if ch == "\\":
                if self.pos + 1 >= len(text):
                    raise self.error("dangling escape")
                chars.append(text[self.pos + 1])
                escaped_any = True
                self.pos += 2
                continue
            if ch == ":":
                if field is not None:
                    raise self.error("unexpected ':'")
                field = "".join(chars)
                if field not in KNOWN_FIELDS or escaped_any:
                    raise self.error(f"unknown field '{field}'", start)
                chars = []
                self.pos += 1
                if self.pos < len(text) and text[self.pos] in '("':
                    return self._field_value(field, occur, start)
                continue
            if ch in UNSUPPORTED_CHARS:
                raise self.error(f"unsupported query syntax '{ch}'")
            chars.append(ch)
            self.pos += 1

        word = "".join(chars)
        if field is not None and not word:
            raise self.error(f"missing value for field '{field}'", start)
        if field is None and occur is None and not escaped_any and word in OPERATORS:
            return [Lexeme("op", text=word, position=start)]
        return [Lexeme("word", text=word, field=field, occur=occur, position=start)]

    def _field_value(self, field: str, occur: str | None, start: int) -> List[Lexeme]:
        if self.text[self.pos] == '"':
            return [Lexeme("phrase", text=self._phrase(), field=field, occur=occur, position=start)]
        self.pos += 1
        return [Lexeme("lparen", field=field, occur=occur, position=start)]


class _Parser:
    def __init__(self, lexemes: Sequence[Lexeme]) -> None:
        self.lexemes = list(lexemes)
        self.pos = 0

    def peek(self, offset: int = 0) -> Lexeme | None:
        idx = self.pos + offset
        return self.lexemes[idx] if idx < len(self.lexemes) else None

    def parse(self) -> List[Clause]:
        clauses = self._clauses(closing=False)
        if self.peek() is not None:
            raise QuerySyntaxError(f"unbalanced ')' at position {self.peek().position}")
        return clauses

    def _starts_clause(self, lexeme: Lexeme | None) -> bool:
        return lexeme is not None and lexeme.kind != "rparen"

    def _clauses(self, closing: bool) -> List[Clause]:
        clauses: List[Clause] = []
        conjoin = False
        negate = False
        while True:
            lexeme = self.peek()
            if lexeme is None:
                if closing:
                    raise QuerySyntaxError("unbalanced '(' at end of query")
                return clauses
            if lexeme.kind == "rparen":
                if not closing:
                    raise QuerySyntaxError(f"unbalanced ')' at position {lexeme.position}")
                self.pos += 1
                return clauses
            if lexeme.kind == "op" and self._starts_clause(self.peek(1)):
                if lexeme.text == "NOT":
                    negate = True
                    self.pos += 1
                    continue
                if clauses:
                    conjoin = conjoin or lexeme.text == "AND"
                    self.pos += 1
                    continue

            node = self._atom()
            occur = lexeme.occur or (MUST_NOT if negate else SHOULD)
            if conjoin:
                if clauses[-1].occur == SHOULD:
                    clauses[-1].occur = MUST
                if occur == SHOULD:
                    occur = MUST
            clauses.append(Clause(occur=occur, node=node))
            conjoin = False
            negate = False

    def _atom(self) -> Term | Group:
        lexeme = self.lexemes[self.pos]
        self.pos += 1
        if lexeme.kind == "lparen":
            return Group(clauses=self._clauses(closing=True), field=lexeme.field)
        if lexeme.kind == "phrase":
            return Term(text=lexeme.text, field=lexeme.field, phrase=True)
        return Term(text=lexeme.text, field=lexeme.field)


def parse_query(text: str) -> List[Clause]:
    return _Parser(_Lexer(text).lex()).parse()


def _fts_phrase(text: str) -> str | None:
    tokens = TERM_TOKEN_RE.findall(text)
    if not tokens:
        return None
    return '"' + " ".join(tokens) + '"'


def _compile_node(node: Term | Group, field: str | None) -> str | None:
    field = node.field or field
    if field in FACET_FIELDS:
        raise QuerySyntaxError(f"facet '{field}' is only allowed as a top-level clause")
    if isinstance(node, Group):
        return _combine(node.clauses, field)
    phrase = _fts_phrase(node.text)
    if phrase is None:
        return None
    return f"{field} : {phrase}" if field else phrase


def _combine(clauses: Sequence[Clause], field: str | None) -> str | None:
    musts: List[str] = []
    shoulds: List[str] = []
    nots: List[str] = []
    for clause in clauses:
        expr = _compile_node(clause.node, field)
        if expr is None:
            continue
        {MUST: musts, SHOULD: shoulds, MUST_NOT: nots}[clause.occur].append(f"({expr})")

    if musts:
        positive = " AND ".join(musts)
        if shoulds:
            # Optional clauses only add score once the required ones match.
            positive = f"({positive}) AND ({' OR '.join(shoulds + musts)})"
    elif shoulds:
        positive = " OR ".join(shoulds)
    else:
        return None
    if nots:
        return f"({positive}) NOT ({' OR '.join(nots)})"
    return positive


def _facet_value(node: Term | Group) -> str:
    if isinstance(node, Group):
        raise QuerySyntaxError("facet values must be a single term or phrase")
    value = node.text.strip()
    if not value:
        raise QuerySyntaxError(f"missing value for facet '{node.field}'")
    return value


def compile_clauses(clauses: Sequence[Clause]) -> CompiledQuery:
    text_clauses: List[Clause] = []
    required: List[Tuple[str, str]] = []
    excluded: List[Tuple[str, str]] = []
    for clause in clauses:
        if clause.node.field in FACET_FIELDS:
            target = excluded if clause.occur == MUST_NOT else required
            target.append((clause.node.field, _facet_value(clause.node)))
            continue
        text_clauses.append(clause)
    return CompiledQuery(
        match=_combine(text_clauses, None),
        required_facets=required,
        excluded_facets=excluded,
        has_text=bool(text_clauses),
    )


def compile_query(text: str) -> CompiledQuery:
    return compile_clauses(parse_query(text))
