#!/usr/bin/env python3
"""
STACKFORGE EXPANDER - Cardinality Resolution
--------------------------------------------
Turns one Declaration into its ordered list of Instances. The count
expression is evaluated against variables and locals only; each instance
then gets its own context with count.index bound to its position, and as
many attributes as possible are pre-resolved so type errors surface before
anything is created.

Index i always denotes the same logical instance for identical inputs,
which is what lets a second apply recognise unchanged instances.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
from typing import Any, Dict, List

from stackforge.core.errors import CardinalityError, ConfigurationError, NotReady
from stackforge.core.models import Declaration, Instance
from stackforge.expressions.context import BindingContext
from stackforge.expressions.evaluator import evaluate
from stackforge.expressions.functions import type_name

logger = logging.getLogger("stackforge.expander")


class ResourceExpander:

    def cardinality(self, declaration: Declaration, ctx: BindingContext) -> int:
        """Evaluated count; 1 for declarations without one."""
        if declaration.count is None:
            return 1
        path = f"{declaration.address}.count"
        try:
            value = evaluate(declaration.count, ctx)
        except NotReady as e:
            raise CardinalityError(f"count depends on {e.address}, which is only known after apply", path)
        except ConfigurationError as e:
            raise e.at(path)

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CardinalityError(f"count must be a whole number, got {type_name(value)}", path)
        if isinstance(value, float):
            if not value.is_integer():
                raise CardinalityError(f"count must be a whole number, got {value}", path)
            value = int(value)
        if value < 0:
            raise CardinalityError(f"count must not be negative, got {value}", path)
        return value

    def expand(self, declaration: Declaration, ctx: BindingContext) -> List[Instance]:
        """expand(declaration, bindingContext) -> ordered Instances, index 0..n-1."""
        if not declaration.has_count:
            instances = [self._instance(declaration, None, ctx)]
        else:
            count = self.cardinality(declaration, ctx)
            instances = [self._instance(declaration, i, ctx) for i in range(count)]
        logger.debug(f"Expanded {declaration.address} into {len(instances)} instance(s)")
        return instances

    def _instance(self, declaration: Declaration, index, ctx: BindingContext) -> Instance:
        inst_ctx = ctx.with_count(index)
        planned: Dict[str, Any] = {}
        for key, expr in declaration.attributes.items():
            try:
                planned[key] = evaluate(expr, inst_ctx)
            except NotReady:
                continue  # Resolved at apply, once the referenced instance exists
            except ConfigurationError as e:
                raise e.at(f"{declaration.address}.attributes.{key}")
        return Instance(declaration=declaration, index=index, context=inst_ctx, planned=planned)
