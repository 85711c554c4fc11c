#!/usr/bin/env python3
"""
STACKFORGE PLANNING PIPELINE - The Planner
------------------------------------------
Central coordinator for everything that happens before the first provider
call. Phases run in a strict order because the shape of the graph depends
on the values computed by the earlier ones:

1. Validation   - referential integrity, local cycles, connection sanity
2. Binding      - variables + locals frozen into a BindingContext
3. Cardinality  - every count evaluated (vars/locals only)
4. Expansion    - declarations -> ordered instances
5. Graph        - references -> edges, cycle check

Any failure here is a ConfigurationError and nothing has been created.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from stackforge.core.models import Configuration, Instance
from stackforge.expressions.context import BindingContext, ResourceView
from stackforge.planning.expander import ResourceExpander
from stackforge.planning.graph import DependencyGraph, GraphBuilder
from stackforge.validator.validator import ConfigValidator

logger = logging.getLogger("stackforge.planning")


@dataclass
class Plan:
    """
    The complete, read-only outcome of planning. Carried into apply and
    into the output collector.
    """
    config: Configuration
    variables: Dict[str, Any]
    context: BindingContext                      # Variables + locals, no resource state
    counts: Dict[str, int] = field(default_factory=dict)
    instances: List[Instance] = field(default_factory=list)
    graph: DependencyGraph = field(default_factory=DependencyGraph)
    warnings: List[str] = field(default_factory=list)

    def instances_of(self, address: str) -> List[Instance]:
        return [i for i in self.instances if i.declaration.address == address]


class PlanningPipeline:
    """
    Ensures validation, expansion and graph construction happen in a
    strictly defined order.
    """

    def __init__(self, known_types: Optional[Set[str]] = None):
        self.validator = ConfigValidator(known_types)
        self.expander = ResourceExpander()

    def run(self, config: Configuration, variables: Dict[str, Any]) -> Plan:
        # --- PHASE 1: VALIDATION ---
        warnings = self.validator.validate(config)

        # --- PHASE 2: BINDING ---
        context = BindingContext.create(variables, config.locals)

        # --- PHASE 3: CARDINALITY ---
        # Counts first, so references to a count-0 declaration already
        # resolve to an empty collection during expansion.
        counts = {address: self.expander.cardinality(declaration, context)
                  for address, declaration in config.declarations.items()}
        pending = {
            address: ResourceView(address, declaration.has_count, (None,) * counts[address])
            for address, declaration in config.declarations.items()
        }
        planning_context = context.with_resources(pending)

        # --- PHASE 4: EXPANSION ---
        instances: List[Instance] = []
        for declaration in config.declarations.values():
            instances.extend(self.expander.expand(declaration, planning_context))

        # --- PHASE 5: GRAPH ---
        graph = GraphBuilder(config.locals).build(instances)

        logger.info(f"Planned {len(instances)} instance(s) across {len(config.declarations)} "
                    f"declaration(s), depth {graph.depth()}")
        return Plan(config=config, variables=dict(variables), context=context, counts=counts,
                    instances=instances, graph=graph, warnings=warnings)
