#!/usr/bin/env python3
"""
STACKFORGE BINDING CONTEXT
--------------------------
The immutable record of everything an expression may look at: variables,
locals, the current count.index, the owning instance (`self`), names bound
by enclosing `for` expressions, and a read-only view of resource state.

Every `with_*` method returns a new context; nothing here is ever mutated,
so contexts are safe to hand to worker threads.

Author: Stackforge Team
Date: 2026-10-18
"""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from stackforge.expressions.ast import Expr

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class ResourceView:
    """
    What a declaration looks like to an expression.
    `instances[i]` is the materialized attribute map of index i, or None
    while that instance is still pending.
    """
    address: str
    has_count: bool
    instances: Tuple[Optional[Mapping[str, Any]], ...] = ()


@dataclass(frozen=True)
class BindingContext:
    variables: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    locals: Mapping[str, Expr] = field(default_factory=lambda: _EMPTY)
    resources: Mapping[str, ResourceView] = field(default_factory=lambda: _EMPTY)
    count_index: Optional[int] = None
    self_value: Optional[Mapping[str, Any]] = None
    iteration: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    # Locals currently being evaluated, to report local.a -> local.b -> local.a
    local_stack: Tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def create(cls, variables: Dict[str, Any], locals: Dict[str, Expr],
               resources: Optional[Dict[str, ResourceView]] = None) -> "BindingContext":
        return cls(
            variables=MappingProxyType(dict(variables)),
            locals=MappingProxyType(dict(locals)),
            resources=MappingProxyType(dict(resources or {})),
        )

    def with_count(self, index: Optional[int]) -> "BindingContext":
        return replace(self, count_index=index)

    def with_self(self, attributes: Mapping[str, Any]) -> "BindingContext":
        return replace(self, self_value=MappingProxyType(dict(attributes)))

    def with_resources(self, resources: Mapping[str, ResourceView]) -> "BindingContext":
        return replace(self, resources=MappingProxyType(dict(resources)))

    def with_iteration(self, bindings: Dict[str, Any]) -> "BindingContext":
        merged = dict(self.iteration)
        merged.update(bindings)
        return replace(self, iteration=MappingProxyType(merged))

    def entering_local(self, name: str) -> "BindingContext":
        """Context used to evaluate local `name`: no count, self or loop names leak in."""
        return replace(self, count_index=None, self_value=None, iteration=_EMPTY,
                       local_stack=self.local_stack + (name,))
