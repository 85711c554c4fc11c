#!/usr/bin/env python3
"""
STACKFORGE BOOTSTRAP DRIVER - The Field Engineer
------------------------------------------------
Runs the post-create actions of one Applied instance over a remote session:

1. Render      - every path and command template against the instance state
2. Connect     - retried with bounded exponential backoff on refused/timeout,
                 never retried on rejected credentials
3. Execute     - transfers and command batches strictly in declared order;
                 the first non-zero exit aborts its batch
4. Release     - the session is closed on every exit path

Once a session is up, nothing is retried. A failed action is terminal for
the instance unless the action was declared with `on_failure: continue`.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from stackforge.config.settings import EngineSettings
from stackforge.core.errors import (
    BootstrapConnectionError,
    BootstrapError,
    BootstrapExecutionError,
    ConfigurationError,
)
from stackforge.core.models import (
    BootstrapAction,
    CommandBatch,
    ConnectionDescriptor,
    Declaration,
    FileTransfer,
    Instance,
)
from stackforge.execution.remote import RemoteSession, SessionFactory
from stackforge.expressions.context import BindingContext
from stackforge.expressions.evaluator import evaluate
from stackforge.expressions.functions import is_number, is_whole, to_string, type_name

logger = logging.getLogger("stackforge.bootstrap")


@dataclass
class BootstrapStep:
    """One rendered action: an upload, or a batch of commands."""
    kind: str                                   # upload | commands
    on_failure: str = "fail"
    source: str = ""
    destination: str = ""
    commands: List[str] = field(default_factory=list)

    def describe(self) -> str:
        if self.kind == "upload":
            return f"upload {self.source} -> {self.destination}"
        return f"{len(self.commands)} command(s)"


def render_actions(actions: List[BootstrapAction], ctx: BindingContext, path: str) -> List[BootstrapStep]:
    """Evaluates every template up front so nothing fails half-way for a typo."""
    steps: List[BootstrapStep] = []
    for i, action in enumerate(actions):
        where = f"{path}.bootstrap[{i}]"
        try:
            if isinstance(action, FileTransfer):
                steps.append(BootstrapStep(
                    kind="upload", on_failure=action.on_failure,
                    source=to_string(evaluate(action.source, ctx)),
                    destination=to_string(evaluate(action.destination, ctx)),
                ))
            elif isinstance(action, CommandBatch):
                steps.append(BootstrapStep(
                    kind="commands", on_failure=action.on_failure,
                    commands=[to_string(evaluate(c, ctx)) for c in action.commands],
                ))
        except ConfigurationError as e:
            raise e.at(where)
    return steps


def build_descriptor(declaration: Declaration, ctx: BindingContext) -> ConnectionDescriptor:
    """
    Resolves the connection block of an Applied instance. `ctx` must already
    carry the instance state as `self`.
    """
    path = f"{declaration.address}.connection"
    values: Dict[str, Any] = {}
    for key, expr in declaration.connection.items():
        try:
            values[key] = evaluate(expr, ctx)
        except ConfigurationError as e:
            raise e.at(f"{path}.{key}")

    host = values.get("host")
    if not isinstance(host, str) or not host:
        raise ConfigurationError(f"connection host must be a non-empty string, got {type_name(host)}", path)
    user = values.get("user")
    if not isinstance(user, str) or not user:
        raise ConfigurationError(f"connection user must be a non-empty string, got {type_name(user)}", path)

    port = values.get("port", 22)
    if isinstance(port, str) and port.isdigit():
        port = int(port)
    if not is_whole(port):
        raise ConfigurationError(f"connection port must be a whole number, got {type_name(port)}", path)

    timeout = values.get("timeout", 10.0)
    if not is_number(timeout) or timeout <= 0:
        raise ConfigurationError("connection timeout must be a positive number", path)

    return ConnectionDescriptor(
        host=host,
        user=user,
        protocol=values.get("type", "ssh") or "ssh",
        port=int(port),
        password=values.get("password"),
        private_key=values.get("private_key"),
        timeout=float(timeout),
    )


class BootstrapDriver:
    """
    runBootstrap(instance, steps, descriptor). One call owns one session;
    calls for different instances may run on different worker threads.
    """

    def __init__(self, session_factory: SessionFactory, settings: Optional[EngineSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.session_factory = session_factory
        self.settings = settings or EngineSettings()
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return min(self.settings.backoff_base * (2 ** (attempt - 1)), self.settings.backoff_max)

    def connect(self, descriptor: ConnectionDescriptor) -> RemoteSession:
        ceiling = self.settings.connect_attempts
        target = f"{descriptor.user}@{descriptor.host}:{descriptor.port}"
        last_error: Optional[BootstrapError] = None
        for attempt in range(1, ceiling + 1):
            try:
                return self.session_factory.connect(descriptor)
            except BootstrapError as e:
                if not e.retryable:
                    logger.error(f"Connection to {target} refused for good: {e}")
                    raise
                last_error = e
                if attempt == ceiling:
                    break
                delay = self.backoff(attempt)
                logger.warning(f"Attempt {attempt}/{ceiling} to reach {target} failed ({e}); "
                               f"retrying in {delay:.1f}s")
                self._sleep(delay)
        raise BootstrapConnectionError(
            f"could not connect to {target} after {ceiling} attempt(s): {last_error}")

    @contextmanager
    def session(self, descriptor: ConnectionDescriptor) -> Iterator[RemoteSession]:
        handle = self.connect(descriptor)
        try:
            yield handle
        finally:
            handle.close()
            logger.debug(f"Closed session to {descriptor.host}")

    def run_bootstrap(self, instance: Instance, steps: List[BootstrapStep],
                      descriptor: ConnectionDescriptor) -> List[str]:
        """
        Executes `steps` in order. Returns the messages of failures tolerated
        through `on_failure: continue`; raises BootstrapError otherwise.
        """
        tolerated: List[str] = []
        if not steps:
            return tolerated

        with self.session(descriptor) as remote:
            for number, step in enumerate(steps, start=1):
                logger.info(f"[{instance.address}] bootstrap {number}/{len(steps)}: {step.describe()}")
                try:
                    self._execute(remote, step)
                except BootstrapExecutionError as e:
                    if step.on_failure != "continue":
                        logger.error(f"[{instance.address}] bootstrap halted: {e}")
                        raise
                    logger.warning(f"[{instance.address}] tolerated failure: {e}")
                    tolerated.append(str(e))
        return tolerated

    def _execute(self, remote: RemoteSession, step: BootstrapStep) -> None:
        if step.kind == "upload":
            remote.upload(step.source, step.destination)
            return
        for command in step.commands:
            exit_code, output = remote.run(command)
            if exit_code != 0:
                raise BootstrapExecutionError(
                    f"command {command!r} exited with status {exit_code}",
                    command=command, exit_code=exit_code, output=output,
                )
            logger.debug(f"$ {command} -> 0")


def state_context(instance: Instance, resources: Mapping[str, Any], state: Mapping[str, Any]) -> BindingContext:
    """Context used for connection + bootstrap templates: live resources, `self` bound."""
    return instance.context.with_resources(resources).with_self(state)
