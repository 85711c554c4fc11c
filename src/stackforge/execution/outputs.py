#!/usr/bin/env python3
"""
STACKFORGE OUTPUT COLLECTOR
---------------------------
Evaluates output expressions against final instance state. After a partial
failure, only outputs whose whole dependency closure is Applied are
produced; the rest are reported with the instances that held them back.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Set

from stackforge.core.errors import ConfigurationError, NotReady
from stackforge.core.models import InstanceResult, InstanceStatus, OutputDeclaration
from stackforge.execution.scheduler import resource_views
from stackforge.expressions.evaluator import evaluate
from stackforge.expressions.functions import is_whole
from stackforge.planning.pipeline import Plan
from stackforge.planning.references import discover

logger = logging.getLogger("stackforge.outputs")


@dataclass
class UnavailableOutput:
    name: str
    blocked_by: List[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class OutputReport:
    values: Dict[str, Any] = field(default_factory=dict)
    unavailable: Dict[str, UnavailableOutput] = field(default_factory=dict)
    sensitive: Set[str] = field(default_factory=set)


class OutputCollector:

    def collect(self, outputs: Mapping[str, OutputDeclaration], plan: Plan,
                results: Mapping[str, InstanceResult]) -> OutputReport:
        report = OutputReport()
        ctx = plan.context.with_resources(resource_views(plan, results))

        for name, output in outputs.items():
            if output.sensitive:
                report.sensitive.add(name)
            required = self._required(output, plan)
            blocked = sorted(a for a in required
                             if results.get(a) is None or results[a].status != InstanceStatus.APPLIED)
            if blocked:
                report.unavailable[name] = UnavailableOutput(
                    name, blocked, f"depends on {', '.join(blocked)}")
                logger.warning(f"Output {name} unavailable: depends on {', '.join(blocked)}")
                continue
            try:
                report.values[name] = evaluate(output.value, ctx)
            except NotReady as e:
                report.unavailable[name] = UnavailableOutput(name, [e.address], str(e))
            except ConfigurationError as e:
                e.at(f"output.{name}")
                report.unavailable[name] = UnavailableOutput(name, [], str(e))
                logger.error(f"Output {name} could not be evaluated: {e}")
        return report

    def _required(self, output: OutputDeclaration, plan: Plan) -> Set[str]:
        """Instances the output reads, plus everything those depend on."""
        direct: Set[str] = set()
        for reference in discover(output.value, plan.config.locals):
            candidates = plan.instances_of(reference.address)
            if reference.fans_out or not candidates or not candidates[0].declaration.has_count:
                direct.update(i.address for i in candidates)
                continue
            try:
                key = evaluate(reference.index, plan.context)
            except (NotReady, ConfigurationError):
                direct.update(i.address for i in candidates)
                continue
            if is_whole(key) and 0 <= int(key) < len(candidates):
                direct.add(candidates[int(key)].address)
            else:
                # Out of range: evaluation reports the error
                direct.update(i.address for i in candidates)
        return direct | plan.graph.transitive_dependencies(direct)
