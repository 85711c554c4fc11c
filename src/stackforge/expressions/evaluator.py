#!/usr/bin/env python3
"""
STACKFORGE EVALUATOR - The Interpreter
--------------------------------------
Reduces an AST to a concrete value against a BindingContext.

Evaluation is pure: it reads the context and never mutates it. Three
outcomes are possible for any expression:

1. A value (str, int, float, bool, None, list or dict)
2. A ConfigurationError subclass (unknown name, type mismatch, ...)
3. NotReady, when a referenced instance has not been materialized yet

Author: Stackforge Team
Date: 2026-10-18
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from stackforge.core.errors import (
    CycleError,
    ExpressionTypeError,
    NotReady,
    UnknownReferenceError,
    UnresolvedIdentifierError,
)
from stackforge.expressions import ast
from stackforge.expressions.context import BindingContext, ResourceView
from stackforge.expressions.functions import call_builtin, is_number, is_whole, to_string, type_name


def instance_address(base: str, index: Optional[int]) -> str:
    return base if index is None else f"{base}[{index}]"


class ExpressionEvaluator:
    """Visitor over the tagged-variant AST. Stateless; one shared instance is enough."""

    def __init__(self):
        self._dispatch: Dict[type, Callable[[Any, BindingContext], Any]] = {
            ast.Literal: lambda node, ctx: node.value,
            ast.TemplateExpr: self._template,
            ast.ListExpr: lambda node, ctx: [self.evaluate(i, ctx) for i in node.items],
            ast.MapExpr: self._map,
            ast.VariableRef: self._variable,
            ast.LocalRef: self._local,
            ast.CountIndex: self._count_index,
            ast.SelfRef: self._self,
            ast.IterVar: self._iter_var,
            ast.ResourceRef: self._resource,
            ast.GetAttr: self._get_attr,
            ast.Index: self._index,
            ast.Splat: self._splat,
            ast.Conditional: self._conditional,
            ast.BinaryOp: self._binary,
            ast.UnaryOp: self._unary,
            ast.Call: lambda node, ctx: call_builtin(node.name, [self.evaluate(a, ctx) for a in node.args]),
            ast.ForExpr: self._for,
        }

    def evaluate(self, expr: ast.Expr, ctx: BindingContext) -> Any:
        try:
            handler = self._dispatch[type(expr)]
        except KeyError:
            raise TypeError(f"not an expression node: {expr!r}")
        return handler(expr, ctx)

    # --- names ---------------------------------------------------------

    def _variable(self, node: ast.VariableRef, ctx: BindingContext) -> Any:
        if node.name not in ctx.variables:
            raise UnresolvedIdentifierError(f"undeclared variable 'var.{node.name}'")
        return ctx.variables[node.name]

    def _local(self, node: ast.LocalRef, ctx: BindingContext) -> Any:
        if node.name in ctx.local_stack:
            start = ctx.local_stack.index(node.name)
            chain = [f"local.{n}" for n in ctx.local_stack[start:]] + [f"local.{node.name}"]
            raise CycleError(chain)
        if node.name not in ctx.locals:
            raise UnresolvedIdentifierError(f"undeclared local 'local.{node.name}'")
        return self.evaluate(ctx.locals[node.name], ctx.entering_local(node.name))

    def _count_index(self, node: ast.CountIndex, ctx: BindingContext) -> int:
        if ctx.count_index is None:
            raise UnresolvedIdentifierError("'count.index' used outside a declaration with count")
        return ctx.count_index

    def _self(self, node: ast.SelfRef, ctx: BindingContext) -> Dict[str, Any]:
        if ctx.self_value is None:
            raise UnresolvedIdentifierError("'self' is only available in connection and bootstrap blocks")
        return dict(ctx.self_value)

    def _iter_var(self, node: ast.IterVar, ctx: BindingContext) -> Any:
        if node.name not in ctx.iteration:
            raise UnresolvedIdentifierError(f"unbound iteration variable {node.name!r}")
        return ctx.iteration[node.name]

    # --- resources -----------------------------------------------------

    def _view(self, node: ast.ResourceRef, ctx: BindingContext) -> ResourceView:
        view = ctx.resources.get(node.address)
        if view is None:
            raise UnknownReferenceError(f"reference to undeclared resource {node.address!r}")
        return view

    def _instance(self, view: ResourceView, index: Optional[int]) -> Dict[str, Any]:
        slot = 0 if index is None else index
        state = view.instances[slot]
        if state is None:
            raise NotReady(instance_address(view.address, index))
        return dict(state)

    def _resource(self, node: ast.ResourceRef, ctx: BindingContext) -> Any:
        view = self._view(node, ctx)
        if not view.has_count:
            return self._instance(view, None)
        return [self._instance(view, i) for i in range(len(view.instances))]

    # --- access --------------------------------------------------------

    def _get_attr(self, node: ast.GetAttr, ctx: BindingContext) -> Any:
        return self._attr(self.evaluate(node.target, ctx), node.name)

    def _attr(self, target: Any, name: str) -> Any:
        if isinstance(target, dict):
            if name not in target:
                raise ExpressionTypeError(f"object has no attribute {name!r}")
            return target[name]
        hint = " (use [index] or [*] on a collection)" if isinstance(target, list) else ""
        raise ExpressionTypeError(f"cannot read attribute {name!r} of {type_name(target)}{hint}")

    def _index(self, node: ast.Index, ctx: BindingContext) -> Any:
        key = self.evaluate(node.key, ctx)
        # sub[0] only waits for sub[0], not for its siblings
        if isinstance(node.target, ast.ResourceRef):
            view = self._view(node.target, ctx)
            if view.has_count:
                position = self._position(key, len(view.instances), node.target.address)
                return self._instance(view, position)
        return self._subscript(self.evaluate(node.target, ctx), key)

    def _position(self, key: Any, length: int, what: str) -> int:
        if not is_whole(key):
            raise ExpressionTypeError(f"index into {what} must be a whole number, got {type_name(key)}")
        position = int(key)
        if not 0 <= position < length:
            raise ExpressionTypeError(f"index {position} out of range for {what} of length {length}")
        return position

    def _subscript(self, target: Any, key: Any) -> Any:
        if isinstance(target, list):
            return target[self._position(key, len(target), "list")]
        if isinstance(target, dict):
            if not isinstance(key, str):
                raise ExpressionTypeError(f"map key must be a string, got {type_name(key)}")
            if key not in target:
                raise ExpressionTypeError(f"map has no key {key!r}")
            return target[key]
        raise ExpressionTypeError(f"cannot index {type_name(target)}")

    def _splat(self, node: ast.Splat, ctx: BindingContext) -> List[Any]:
        target = self.evaluate(node.target, ctx)
        if target is None:
            items: List[Any] = []
        elif isinstance(target, list):
            items = target
        else:
            items = [target]
        result = []
        for item in items:
            for name in node.path:
                item = self._attr(item, name)
            result.append(item)
        return result

    # --- operators -----------------------------------------------------

    def _template(self, node: ast.TemplateExpr, ctx: BindingContext) -> str:
        return "".join(to_string(self.evaluate(part, ctx)) for part in node.parts)

    def _map(self, node: ast.MapExpr, ctx: BindingContext) -> Dict[str, Any]:
        result = {}
        for key_expr, value_expr in node.entries:
            result[self._map_key(self.evaluate(key_expr, ctx))] = self.evaluate(value_expr, ctx)
        return result

    def _map_key(self, key: Any) -> str:
        if isinstance(key, str):
            return key
        if is_number(key):
            return to_string(key)
        raise ExpressionTypeError(f"map key must be a string, got {type_name(key)}")

    def _conditional(self, node: ast.Conditional, ctx: BindingContext) -> Any:
        condition = self.evaluate(node.condition, ctx)
        if not isinstance(condition, bool):
            raise ExpressionTypeError(f"condition must be bool, got {type_name(condition)}")
        return self.evaluate(node.true_value if condition else node.false_value, ctx)

    def _binary(self, node: ast.BinaryOp, ctx: BindingContext) -> Any:
        op = node.op
        if op in ("&&", "||"):
            left = self._boolean(op, self.evaluate(node.left, ctx))
            if (op == "&&" and not left) or (op == "||" and left):
                return left
            return self._boolean(op, self.evaluate(node.right, ctx))

        left = self.evaluate(node.left, ctx)
        right = self.evaluate(node.right, ctx)
        if op == "==":
            return _equal(left, right)
        if op == "!=":
            return not _equal(left, right)

        if not (is_number(left) and is_number(right)):
            raise ExpressionTypeError(
                f"operator {op!r} needs numbers, got {type_name(left)} and {type_name(right)}")
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op in ("/", "%") and right == 0:
            raise ExpressionTypeError(f"division by zero in {op!r}")
        if op == "/":
            try:
                quotient = left / right
            except OverflowError:
                raise ExpressionTypeError(f"result of {op!r} is too large")
            return int(quotient) if quotient.is_integer() else quotient
        if op == "%":
            return left % right
        return {"<": left < right, "<=": left <= right,
                ">": left > right, ">=": left >= right}[op]

    def _boolean(self, op: str, value: Any) -> bool:
        if not isinstance(value, bool):
            raise ExpressionTypeError(f"operator {op!r} needs bool, got {type_name(value)}")
        return value

    def _unary(self, node: ast.UnaryOp, ctx: BindingContext) -> Any:
        value = self.evaluate(node.operand, ctx)
        if node.op == "!":
            return not self._boolean("!", value)
        if not is_number(value):
            raise ExpressionTypeError(f"unary '-' needs a number, got {type_name(value)}")
        return -value

    def _for(self, node: ast.ForExpr, ctx: BindingContext) -> Any:
        collection = self.evaluate(node.collection, ctx)
        if isinstance(collection, list):
            pairs: List[Tuple[Any, Any]] = list(enumerate(collection))
        elif isinstance(collection, dict):
            pairs = [(k, collection[k]) for k in sorted(collection)]
        else:
            raise ExpressionTypeError(f"'for' needs a list or map, got {type_name(collection)}")

        values: List[Any] = []
        mapping: Dict[str, Any] = {}
        for key, value in pairs:
            bindings = {node.value_var: value}
            if node.key_var:
                bindings[node.key_var] = key
            inner = ctx.with_iteration(bindings)
            if node.condition is not None and not self._boolean("if", self.evaluate(node.condition, inner)):
                continue
            result = self.evaluate(node.value, inner)
            if not node.is_map:
                values.append(result)
                continue
            map_key = self._map_key(self.evaluate(node.key, inner))
            if map_key in mapping:
                raise ExpressionTypeError(f"duplicate key {map_key!r} in 'for' map")
            mapping[map_key] = result
        return mapping if node.is_map else values


def _equal(left: Any, right: Any) -> bool:
    # true == 1 must not hold
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


_DEFAULT = ExpressionEvaluator()


def evaluate(expr: ast.Expr, ctx: BindingContext) -> Any:
    """evaluate(expr, bindingContext) -> value; raises ConfigurationError or NotReady."""
    return _DEFAULT.evaluate(expr, ctx)
