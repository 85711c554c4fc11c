#!/usr/bin/env python3
"""
STACKFORGE PARSER - The Grammarian
----------------------------------
Recursive-descent parser from lexer Tokens to the tagged-variant AST.

Precedence, lowest first:
    ?:   ||   &&   == !=   < <= > >=   + -   * / %   ! - (unary)   . [] [*] ()

Author: Stackforge Team
Date: 2026-10-18
"""

from functools import lru_cache
from typing import FrozenSet, List, Optional, Tuple

from stackforge.core.errors import ExpressionSyntaxError, UnresolvedIdentifierError
from stackforge.expressions import ast
from stackforge.expressions.lexer import ExpressionLexer, Token, split_template

_LEXER = ExpressionLexer()

KEYWORDS = {"true": True, "false": False, "null": None}
BINARY_LEVELS = (
    ("||",),
    ("&&",),
    ("==", "!="),
    ("<", "<=", ">", ">="),
    ("+", "-"),
    ("*", "/", "%"),
)


class ExpressionParser:
    """One parser per expression body. `scope` holds enclosing `for` variables."""

    def __init__(self, text: str, scope: FrozenSet[str] = frozenset()):
        self.text = text
        self.tokens: List[Token] = _LEXER.tokenize(text)
        self.pos = 0
        self.scope = scope

    # --- token helpers -------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _at(self, kind: str, value=None, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token.kind == kind and (value is None or token.value == value)

    def _accept(self, kind: str, value=None) -> Optional[Token]:
        if self._at(kind, value):
            return self._advance()
        return None

    def _expect(self, kind: str, value=None) -> Token:
        token = self._accept(kind, value)
        if token is None:
            found = self._peek()
            wanted = value if value is not None else kind
            shown = found.value if found.kind != "EOF" else "end of expression"
            raise ExpressionSyntaxError(
                f"expected {wanted!r} but found {shown!r} at offset {found.pos} in {self.text!r}")
        return token

    # --- grammar -------------------------------------------------------

    def parse(self) -> ast.Expr:
        expr = self.expression()
        self._expect("EOF")
        return expr

    def expression(self) -> ast.Expr:
        condition = self._binary(0)
        if self._accept("OP", "?"):
            true_value = self.expression()
            self._expect("OP", ":")
            false_value = self.expression()
            return ast.Conditional(condition, true_value, false_value)
        return condition

    def _binary(self, level: int) -> ast.Expr:
        if level == len(BINARY_LEVELS):
            return self._unary()
        left = self._binary(level + 1)
        while self._peek().kind == "OP" and self._peek().value in BINARY_LEVELS[level]:
            op = self._advance().value
            right = self._binary(level + 1)
            left = ast.BinaryOp(op, left, right)
        return left

    def _unary(self) -> ast.Expr:
        if self._peek().kind == "OP" and self._peek().value in ("!", "-"):
            op = self._advance().value
            return ast.UnaryOp(op, self._unary())
        return self._postfix(self._primary())

    def _postfix(self, expr: ast.Expr) -> ast.Expr:
        while True:
            if self._accept("OP", "."):
                expr = ast.GetAttr(expr, self._expect("IDENT").value)
            elif self._at("OP", "[") and self._at("OP", "*", 1) and self._at("OP", "]", 2):
                self.pos += 3
                path: List[str] = []
                while self._accept("OP", "."):
                    path.append(self._expect("IDENT").value)
                expr = ast.Splat(expr, tuple(path))
            elif self._accept("OP", "["):
                key = self.expression()
                self._expect("OP", "]")
                expr = ast.Index(expr, key)
            else:
                return expr

    def _primary(self) -> ast.Expr:
        token = self._peek()
        if token.kind == "NUMBER":
            self._advance()
            return ast.Literal(token.value)
        if token.kind == "STRING":
            self._advance()
            return self._string(token.value)
        if self._accept("OP", "("):
            inner = self.expression()
            self._expect("OP", ")")
            return inner
        if self._accept("OP", "["):
            if self._at("IDENT", "for"):
                return self._for(closing="]")
            return ast.ListExpr(tuple(self._sequence("]")))
        if self._accept("OP", "{"):
            if self._at("IDENT", "for"):
                return self._for(closing="}")
            return self._map()
        if token.kind == "IDENT":
            return self._identifier()
        shown = token.value if token.kind != "EOF" else "end of expression"
        raise ExpressionSyntaxError(f"unexpected {shown!r} at offset {token.pos} in {self.text!r}")

    def _string(self, value: str) -> ast.Expr:
        if "${" not in value:
            return ast.Literal(value)
        parts = _template_parts(value, self.scope)
        return ast.TemplateExpr(parts)

    def _sequence(self, closing: str) -> List[ast.Expr]:
        items = []
        while not self._accept("OP", closing):
            items.append(self.expression())
            if not self._accept("OP", ","):
                self._expect("OP", closing)
                break
        return items

    def _map(self) -> ast.Expr:
        entries: List[Tuple[ast.Expr, ast.Expr]] = []
        while not self._accept("OP", "}"):
            if self._at("IDENT") and (self._at("OP", "=", 1) or self._at("OP", ":", 1)):
                key: ast.Expr = ast.Literal(self._advance().value)
            else:
                key = self.expression()
            if not self._accept("OP", "="):
                self._expect("OP", ":")
            entries.append((key, self.expression()))
            self._accept("OP", ",")
        return ast.MapExpr(tuple(entries))

    def _for(self, closing: str) -> ast.Expr:
        self._expect("IDENT", "for")
        first = self._expect("IDENT").value
        key_var = None
        value_var = first
        if self._accept("OP", ","):
            key_var, value_var = first, self._expect("IDENT").value
        self._expect("IDENT", "in")
        collection = self.expression()
        self._expect("OP", ":")

        outer_scope = self.scope
        self.scope = outer_scope | {value_var} | ({key_var} if key_var else set())
        try:
            key_expr = None
            value = self.expression()
            if closing == "}":
                self._expect("OP", "=>")
                key_expr, value = value, self.expression()
            condition = None
            if self._accept("IDENT", "if"):
                condition = self.expression()
        finally:
            self.scope = outer_scope
        self._expect("OP", closing)
        return ast.ForExpr(key_var, value_var, collection, value,
                           key=key_expr, condition=condition, is_map=closing == "}")

    def _identifier(self) -> ast.Expr:
        token = self._advance()
        name = token.value
        if name in KEYWORDS:
            return ast.Literal(KEYWORDS[name])
        if self._at("OP", "("):
            self._advance()
            return ast.Call(name, tuple(self._sequence(")")))
        if name in self.scope:
            return ast.IterVar(name)
        if name == "self":
            return ast.SelfRef()
        if not self._accept("OP", "."):
            raise UnresolvedIdentifierError(f"unknown identifier {name!r} in {self.text!r}")
        member = self._expect("IDENT").value
        if name == "var":
            return ast.VariableRef(member)
        if name == "local":
            return ast.LocalRef(member)
        if name == "count":
            if member != "index":
                raise UnresolvedIdentifierError(f"unknown attribute 'count.{member}' in {self.text!r}")
            return ast.CountIndex()
        return ast.ResourceRef(name, member)


def _template_parts(text: str, scope: FrozenSet[str]) -> Tuple[ast.Expr, ...]:
    parts = []
    for is_expr, content in split_template(text):
        parts.append(ExpressionParser(content, scope).parse() if is_expr else ast.Literal(content))
    return tuple(parts)


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> ast.Expr:
    """Parses a bare expression body (no ${ } wrapper)."""
    return ExpressionParser(text).parse()


@lru_cache(maxsize=4096)
def parse_template(text: str) -> ast.Expr:
    """
    Parses a configuration string:
      "plain"          -> Literal("plain")
      "${expr}"        -> expr itself (keeps the value's type)
      "web-${expr}"    -> TemplateExpr (string)
    """
    shards = split_template(text)
    if not any(is_expr for is_expr, _ in shards):
        return ast.Literal("".join(content for _, content in shards))
    if len(shards) == 1:
        return parse_expression(shards[0][1])
    return ast.TemplateExpr(_template_parts(text, frozenset()))
