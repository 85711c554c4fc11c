#!/usr/bin/env python3
"""
STACKFORGE REFERENCE DISCOVERY
------------------------------
Statically finds every resource reference inside an expression, following
`local.*` indirections, without evaluating anything that needs resource
state. Each hit becomes a Reference, the edge material the graph builder
turns into instance-to-instance dependencies.
"""

from dataclasses import dataclass
from typing import Iterator, List, Mapping, Optional, Tuple

from stackforge.expressions import ast


@dataclass(frozen=True)
class Reference:
    """
    `subnet.sub[0].id` -> Reference("subnet.sub", index=Literal(0))
    `subnet.sub[*].id` and `subnet.sub.id` -> Reference("subnet.sub")
    """
    address: str
    index: Optional[ast.Expr] = None

    @property
    def fans_out(self) -> bool:
        return self.index is None


def discover(expr: ast.Expr, locals: Mapping[str, ast.Expr]) -> List[Reference]:
    return list(_discover(expr, locals, ()))


def _discover(expr: ast.Expr, locals: Mapping[str, ast.Expr], via: Tuple[str, ...]) -> Iterator[Reference]:
    # Attribute access and splats reach their ResourceRef through children()
    if isinstance(expr, ast.ResourceRef):
        yield Reference(expr.address)
        return

    if isinstance(expr, ast.Index) and isinstance(expr.target, ast.ResourceRef):
        yield Reference(expr.target.address, index=expr.key)
        yield from _discover(expr.key, locals, via)
        return

    if isinstance(expr, ast.LocalRef):
        # Cycles among locals are reported by the validator; stop here
        if expr.name in locals and expr.name not in via:
            yield from _discover(locals[expr.name], locals, via + (expr.name,))
        return

    for child in expr.children():
        yield from _discover(child, locals, via)
