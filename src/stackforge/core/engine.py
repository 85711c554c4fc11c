#!/usr/bin/env python3
"""
STACKFORGE ENGINE - The High Orchestrator
-----------------------------------------
ProvisioningEngine carries a configuration through the four stages of a
run and keeps instance state between applies:

1. Load     - YAML -> Configuration, variables resolved from all sources
2. Plan     - validation, expansion, dependency graph (no side effects)
3. Apply    - materialization + bootstrap on the worker pool
4. Collect  - outputs evaluated against final instance state

Configuration errors surface from stages 1-2 as exceptions. From stage 3
on, failures are recorded per instance and the run always returns a
complete ApplyResult.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from stackforge.config.loader import ConfigLoader, load_var_file, resolve_variables
from stackforge.config.settings import EngineSettings
from stackforge.core.models import Configuration, InstanceResult, InstanceStatus
from stackforge.execution.bootstrap import BootstrapDriver
from stackforge.execution.outputs import OutputCollector, OutputReport
from stackforge.execution.remote import ParamikoSessionFactory, SessionFactory
from stackforge.execution.scheduler import Executor, StateStore
from stackforge.planning.pipeline import Plan, PlanningPipeline
from stackforge.providers.base import NullProvider, ProviderRegistry

logger = logging.getLogger("stackforge.engine")


@dataclass
class ApplyResult:
    plan: Plan
    results: Dict[str, InstanceResult] = field(default_factory=dict)
    outputs: OutputReport = field(default_factory=OutputReport)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        """True only when every instance is Applied (bootstrap included)."""
        return all(r.status == InstanceStatus.APPLIED for r in self.results.values())

    def by_status(self, status: InstanceStatus) -> List[InstanceResult]:
        return [r for r in self.results.values() if r.status == status]


class ProvisioningEngine:
    """
    Principal orchestrator. One engine instance corresponds to one managed
    stack: applying twice with unchanged inputs converges to no-ops.
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None,
                 session_factory: Optional[SessionFactory] = None,
                 settings: Optional[EngineSettings] = None):
        self.registry = registry or ProviderRegistry(default=NullProvider())
        self.settings = settings or EngineSettings()
        self.loader = ConfigLoader()
        self.state = StateStore()
        self.driver = BootstrapDriver(session_factory or ParamikoSessionFactory(), self.settings)
        self.collector = OutputCollector()

    # --- stages ------------------------------------------------------------

    def load(self, path: str, overrides: Optional[Mapping[str, Any]] = None,
             var_file: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None) -> Tuple[Configuration, Dict[str, Any]]:
        config = self.loader.load_file(path)
        file_values = load_var_file(var_file) if var_file else None
        variables = resolve_variables(config, overrides, file_values, environ)
        logger.info(f"Loaded {config.source}: {len(config.declarations)} declaration(s)")
        return config, variables

    def plan(self, config: Configuration, variables: Mapping[str, Any]) -> Plan:
        pipeline = PlanningPipeline(self.registry.known_types())
        return pipeline.run(config, dict(variables))

    def apply(self, plan: Plan,
              on_update: Optional[Callable[[InstanceResult], None]] = None) -> ApplyResult:
        started = time.monotonic()
        executor = Executor(self.registry, self.driver, self.settings, self.state)
        results = executor.apply(plan, on_update)
        outputs = self.collector.collect(plan.config.outputs, plan, results)
        result = ApplyResult(plan=plan, results=results, outputs=outputs,
                             duration=time.monotonic() - started)
        summary = self.generate_summary(result)
        logger.info(f"Apply finished: {summary['status']} "
                    f"({summary['applied']}/{summary['total_instances']} applied)")
        return result

    # --- reporting ---------------------------------------------------------

    def generate_summary(self, result: ApplyResult) -> Dict[str, Any]:
        total = len(result.results)
        applied = len(result.by_status(InstanceStatus.APPLIED))
        return {
            "status": self._derive_status(result),
            "total_instances": total,
            "applied": applied,
            "failed": len(result.by_status(InstanceStatus.FAILED)),
            "blocked": len(result.by_status(InstanceStatus.BLOCKED)),
            "unchanged": sum(1 for r in result.results.values() if r.noop),
            "bootstrapped": sum(1 for r in result.results.values() if r.bootstrapped),
            "success_rate": (applied / total) if total > 0 else 1.0,
            "outputs": len(result.outputs.values),
            "unavailable_outputs": len(result.outputs.unavailable),
            "duration_seconds": round(result.duration, 3),
            "summary_timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
        }

    def plan_report(self, plan: Plan) -> Dict[str, Any]:
        levels = plan.graph.levels()
        return {
            "order": plan.graph.topological_order(),
            "levels": levels,
            "depth": plan.graph.depth(),
            "counts": dict(plan.counts),
            "edges": [list(edge) for edge in plan.graph.edges],
            "warnings": list(plan.warnings),
        }

    def to_report(self, result: ApplyResult, show_sensitive: bool = False) -> Dict[str, Any]:
        """Machine-readable report (the CLI's --json)."""
        outputs = {
            name: ("(sensitive)" if name in result.outputs.sensitive and not show_sensitive else value)
            for name, value in result.outputs.values.items()
        }
        return {
            "summary": self.generate_summary(result),
            "instances": [
                {
                    "address": r.address,
                    "status": r.status.value,
                    "identity": r.identity,
                    "materialized": r.materialized,
                    "bootstrapped": r.bootstrapped,
                    "unchanged": r.noop,
                    "error": r.error,
                    "blocked_by": r.blocked_by,
                    "warnings": list(r.warnings),
                }
                for r in result.results.values()
            ],
            "outputs": outputs,
            "unavailable_outputs": {
                name: {"blocked_by": u.blocked_by, "reason": u.reason}
                for name, u in result.outputs.unavailable.items()
            },
        }

    def _derive_status(self, result: ApplyResult) -> str:
        if result.success:
            return "SUCCESS"
        if result.by_status(InstanceStatus.APPLIED):
            return "PARTIAL"
        return "FAILED"
