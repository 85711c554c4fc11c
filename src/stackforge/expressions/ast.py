#!/usr/bin/env python3
"""
STACKFORGE EXPRESSION AST
-------------------------
Tagged-variant syntax tree produced by the parser and consumed by the
evaluator and the graph builder. Nodes are frozen dataclasses so a parsed
configuration can be shared across worker threads without copying.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Optional, Tuple


class Expr:
    """Base class of every node."""

    def children(self) -> Iterator["Expr"]:
        return iter(())


@dataclass(frozen=True)
class Literal(Expr):
    value: Any


@dataclass(frozen=True)
class TemplateExpr(Expr):
    """Text with ${...} interpolations; always evaluates to a string."""
    parts: Tuple[Expr, ...]

    def children(self):
        return iter(self.parts)


@dataclass(frozen=True)
class ListExpr(Expr):
    items: Tuple[Expr, ...]

    def children(self):
        return iter(self.items)


@dataclass(frozen=True)
class MapExpr(Expr):
    entries: Tuple[Tuple[Expr, Expr], ...]

    def children(self):
        for key, value in self.entries:
            yield key
            yield value


@dataclass(frozen=True)
class VariableRef(Expr):
    name: str


@dataclass(frozen=True)
class LocalRef(Expr):
    name: str


@dataclass(frozen=True)
class CountIndex(Expr):
    pass


@dataclass(frozen=True)
class SelfRef(Expr):
    """The owning instance's materialized attributes (connection/bootstrap only)."""
    pass


@dataclass(frozen=True)
class ResourceRef(Expr):
    """`<type>.<name>`: the whole declaration (object or collection)."""
    type: str
    name: str

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


@dataclass(frozen=True)
class GetAttr(Expr):
    target: Expr
    name: str

    def children(self):
        yield self.target


@dataclass(frozen=True)
class Index(Expr):
    target: Expr
    key: Expr

    def children(self):
        yield self.target
        yield self.key


@dataclass(frozen=True)
class Splat(Expr):
    """`target[*].a.b` - `path` is applied to every element."""
    target: Expr
    path: Tuple[str, ...]

    def children(self):
        yield self.target


@dataclass(frozen=True)
class Conditional(Expr):
    condition: Expr
    true_value: Expr
    false_value: Expr

    def children(self):
        yield self.condition
        yield self.true_value
        yield self.false_value


@dataclass(frozen=True)
class BinaryOp(Expr):
    op: str
    left: Expr
    right: Expr

    def children(self):
        yield self.left
        yield self.right


@dataclass(frozen=True)
class UnaryOp(Expr):
    op: str
    operand: Expr

    def children(self):
        yield self.operand


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...]

    def children(self):
        return iter(self.args)


@dataclass(frozen=True)
class ForExpr(Expr):
    """
    `[for k, v in coll : value if cond]` or `{for k, v in coll : key => value}`.
    `key_var` is None when only one iteration variable is declared.
    """
    key_var: Optional[str]
    value_var: str
    collection: Expr
    value: Expr
    key: Optional[Expr] = None
    condition: Optional[Expr] = None
    is_map: bool = False

    def children(self):
        yield self.collection
        if self.key is not None:
            yield self.key
        yield self.value
        if self.condition is not None:
            yield self.condition


@dataclass(frozen=True)
class IterVar(Expr):
    """A name bound by an enclosing `for`."""
    name: str


def walk(expr: Expr) -> Iterator[Expr]:
    """Depth-first pre-order traversal."""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(list(node.children())))
