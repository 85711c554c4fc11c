#!/usr/bin/env python3
"""
STACKFORGE SCHEDULER - The Dispatcher
-------------------------------------
Walks the dependency graph and applies instances on a bounded worker pool.

Per-instance state machine:
    Pending -> Materializing -> Applied | Failed
    Pending -> Blocked                    (a dependency failed)
    Applied -> Failed                     (bootstrap failed)

An instance is dispatched only when every dependency is Applied and its
worker has returned (bootstrap included). A failure blocks every transitive
dependent; independent branches run to completion.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from stackforge.config.settings import EngineSettings
from stackforge.core.errors import ConfigurationError, MaterializationError, NotReady, StackforgeError
from stackforge.core.models import TRANSITIONS, Instance, InstanceResult, InstanceStatus
from stackforge.execution.bootstrap import BootstrapDriver, build_descriptor, render_actions, state_context
from stackforge.expressions.context import ResourceView
from stackforge.expressions.evaluator import evaluate
from stackforge.planning.pipeline import Plan
from stackforge.providers.base import ProviderRegistry

logger = logging.getLogger("stackforge.scheduler")


@dataclass
class StateRecord:
    """What the previous apply left behind for one instance address."""
    attributes: Dict[str, Any]
    identity: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    bootstrapped: bool = False


class StateStore:
    """In-memory record of materialized instances, kept across applies."""

    def __init__(self):
        self._records: Dict[str, StateRecord] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> Optional[StateRecord]:
        with self._lock:
            return self._records.get(address)

    def put(self, address: str, record: StateRecord) -> None:
        with self._lock:
            self._records[address] = record


def resource_views(plan: Plan, results: Mapping[str, InstanceResult]) -> Dict[str, ResourceView]:
    """Applied instances expose their state; everything else reads as not ready."""
    views: Dict[str, ResourceView] = {}
    for address, declaration in plan.config.declarations.items():
        states = []
        for instance in plan.instances_of(address):
            result = results.get(instance.address)
            ready = result is not None and result.status == InstanceStatus.APPLIED
            states.append(result.state() if ready else None)
        views[address] = ResourceView(address, declaration.has_count, tuple(states))
    return views


class Executor:
    """apply(plan) -> {instance address: InstanceResult}"""

    def __init__(self, registry: ProviderRegistry, driver: BootstrapDriver,
                 settings: Optional[EngineSettings] = None, state: Optional[StateStore] = None):
        self.registry = registry
        self.driver = driver
        self.settings = settings or EngineSettings()
        self.state = state if state is not None else StateStore()
        self._lock = threading.Lock()
        self._results: Dict[str, InstanceResult] = {}
        self._plan: Optional[Plan] = None

    # --- status bookkeeping --------------------------------------------

    def _transition(self, result: InstanceResult, status: InstanceStatus) -> None:
        with self._lock:
            if status not in TRANSITIONS[result.status]:
                raise RuntimeError(f"{result.address}: illegal transition "
                                   f"{result.status.value} -> {status.value}")
            result.status = status

    def _snapshot_views(self) -> Dict[str, ResourceView]:
        with self._lock:
            return resource_views(self._plan, self._results)

    # --- apply ---------------------------------------------------------

    def apply(self, plan: Plan,
              on_update: Optional[Callable[[InstanceResult], None]] = None) -> Dict[str, InstanceResult]:
        graph = plan.graph
        order = graph.topological_order()
        position = {address: i for i, address in enumerate(order)}
        self._plan = plan
        self._results = {address: InstanceResult(address) for address in order}

        waiting: Dict[str, Set[str]] = {a: set(graph.dependencies[a]) for a in order}
        ready: List[str] = [a for a in order if not waiting[a]]
        in_flight: Dict[Future, str] = {}

        logger.info(f"Applying {len(order)} instance(s) with parallelism {self.settings.parallelism}")
        with ThreadPoolExecutor(max_workers=self.settings.parallelism,
                                thread_name_prefix="stackforge") as pool:
            while ready or in_flight:
                for address in ready:
                    result = self._results[address]
                    self._transition(result, InstanceStatus.MATERIALIZING)
                    logger.debug(f"Dispatching {address}")
                    in_flight[pool.submit(self._process, graph.nodes[address], result)] = address
                ready = []

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                released: List[str] = []
                for future in done:
                    address = in_flight.pop(future)
                    future.result()  # Workers record their own failures
                    result = self._results[address]
                    if result.status == InstanceStatus.APPLIED:
                        for dependent in graph.dependents[address]:
                            waiting[dependent].discard(address)
                            if not waiting[dependent] and self._results[dependent].status == InstanceStatus.PENDING:
                                released.append(dependent)
                    else:
                        self._block_dependents(plan, address, on_update)
                    if on_update:
                        on_update(result)
                ready = sorted(set(released), key=position.__getitem__)

        return dict(self._results)

    def _block_dependents(self, plan: Plan, failed: str,
                          on_update: Optional[Callable[[InstanceResult], None]]) -> None:
        for address in sorted(plan.graph.transitive_dependents(failed)):
            result = self._results[address]
            if result.status != InstanceStatus.PENDING:
                continue
            self._transition(result, InstanceStatus.BLOCKED)
            result.blocked_by = failed
            logger.warning(f"{address} blocked: dependency {failed} did not apply")
            if on_update:
                on_update(result)

    # --- worker --------------------------------------------------------

    def _process(self, instance: Instance, result: InstanceResult) -> None:
        """Worker entry point. Nothing raised here may abort the run."""
        try:
            self._run(instance, result)
        except Exception as e:
            logger.exception(f"{instance.address} failed unexpectedly")
            result.error = f"unexpected error: {e}"
            if result.status in (InstanceStatus.MATERIALIZING, InstanceStatus.APPLIED):
                self._transition(result, InstanceStatus.FAILED)
            if result.materialized:
                self._record(result, bootstrapped=False)

    def _run(self, instance: Instance, result: InstanceResult) -> None:
        try:
            self._materialize(instance, result)
        except (StackforgeError, NotReady) as e:
            result.error = str(e)
            logger.error(f"{instance.address} failed to materialize: {e}")
            self._transition(result, InstanceStatus.FAILED)
            return

        declaration = instance.declaration
        if not declaration.bootstrap or result.bootstrapped:
            result.bootstrapped = bool(declaration.bootstrap)
            return

        try:
            ctx = state_context(instance, self._snapshot_views(), result.state())
            steps = render_actions(declaration.bootstrap, ctx, declaration.address)
            descriptor = build_descriptor(declaration, ctx)
            result.warnings.extend(self.driver.run_bootstrap(instance, steps, descriptor))
        except (StackforgeError, NotReady) as e:
            result.error = f"bootstrap: {e}"
            logger.error(f"{instance.address} bootstrap failed: {e}")
            self._transition(result, InstanceStatus.FAILED)
            self._record(result, bootstrapped=False)
            return
        result.bootstrapped = True
        self._record(result, bootstrapped=True)

    def _materialize(self, instance: Instance, result: InstanceResult) -> None:
        ctx = instance.context.with_resources(self._snapshot_views())
        attributes: Dict[str, Any] = {}
        for key, expr in instance.declaration.attributes.items():
            try:
                attributes[key] = evaluate(expr, ctx)
            except ConfigurationError as e:
                raise e.at(f"{instance.declaration.address}.attributes.{key}")
        result.attributes = attributes

        provider = self.registry.get(instance.declaration.type)
        prior = self.state.get(instance.address)
        wants_bootstrap = bool(instance.declaration.bootstrap)
        if prior is not None and prior.attributes == attributes and (prior.bootstrapped or not wants_bootstrap):
            identity, outputs = prior.identity, self._call(provider.read, instance, prior.identity)
            result.noop = True
            result.bootstrapped = prior.bootstrapped
            logger.info(f"{instance.address} unchanged ({identity})")
        else:
            if prior is not None:
                logger.info(f"{instance.address} changed; replacing {prior.identity}")
            identity, outputs = self._call(provider.create, instance, attributes)
            logger.info(f"{instance.address} created ({identity})")

        result.identity = identity
        result.outputs = dict(outputs or {})
        result.materialized = True
        self._transition(result, InstanceStatus.APPLIED)
        self._record(result, bootstrapped=result.bootstrapped)

    def _call(self, operation: Callable, instance: Instance, argument: Any) -> Any:
        """Provider calls are opaque; anything they raise fails this instance only."""
        try:
            return operation(argument)
        except StackforgeError:
            raise
        except Exception as e:
            raise MaterializationError(f"{instance.declaration.type} provider: {e}") from e

    def _record(self, result: InstanceResult, bootstrapped: bool) -> None:
        self.state.put(result.address, StateRecord(
            attributes=dict(result.attributes),
            identity=result.identity,
            outputs=dict(result.outputs),
            bootstrapped=bootstrapped,
        ))
