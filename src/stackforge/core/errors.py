#!/usr/bin/env python3
"""
STACKFORGE ERRORS - The Taxonomy
--------------------------------
Every failure the orchestrator can report, grouped by the phase that
detects it:

1. ConfigurationError   - found while planning, fatal, nothing is created
2. MaterializationError - provider create/read failed for one instance
3. BootstrapError       - remote session or remote action failed

NotReady is not an error: it tells the caller that a value depends on an
instance which has not been materialized yet.
"""

from typing import List, Optional


class StackforgeError(Exception):
    """Root of all stackforge failures."""


class ConfigurationError(StackforgeError):
    """
    Raised before any materialization starts.
    `path` names the offending declaration/attribute (e.g. 'server.srv.attributes.subnet_id').
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}" if path else message)

    def at(self, path: str) -> "ConfigurationError":
        """Attaches a location if the error does not carry one yet."""
        if self.path is None:
            self.path = path
            self.args = (f"{path}: {self.message}",)
        return self


class ExpressionSyntaxError(ConfigurationError):
    pass


class UnresolvedIdentifierError(ConfigurationError):
    pass


class ExpressionTypeError(ConfigurationError):
    pass


class UnknownReferenceError(ConfigurationError):
    pass


class CardinalityError(ConfigurationError):
    pass


class VariableError(ConfigurationError):
    pass


class CycleError(ConfigurationError):
    """The reference graph (or the locals) loop back on themselves."""

    def __init__(self, cycle: List[str], path: Optional[str] = None):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle), path)


class NotReady(Exception):
    """A referenced instance has no materialized state yet."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"{address} is not materialized yet")


class MaterializationError(StackforgeError):
    pass


class BootstrapError(StackforgeError):
    retryable = False


class BootstrapConnectionError(BootstrapError):
    """Connection refused / timed out. Retried by the bootstrap driver."""
    retryable = True


class AuthenticationError(BootstrapError):
    pass


class BootstrapExecutionError(BootstrapError):
    """A transfer or command failed once the session was up. Never retried."""

    def __init__(self, message: str, command: Optional[str] = None,
                 exit_code: Optional[int] = None, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)
