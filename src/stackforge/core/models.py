#!/usr/bin/env python3
"""
STACKFORGE CORE MODELS
----------------------
Defines the fundamental data structures used across the Stackforge engine:
what the operator declared (Variable, Declaration, OutputDeclaration,
Configuration), what the expander produced (Instance) and what the
executor reported (InstanceResult).

Author: Stackforge Team
Date: 2026-10-18
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from stackforge.expressions.ast import Expr
from stackforge.expressions.context import BindingContext


class InstanceStatus(str, Enum):
    PENDING = "Pending"
    MATERIALIZING = "Materializing"
    APPLIED = "Applied"
    FAILED = "Failed"
    BLOCKED = "Blocked"

    @property
    def terminal(self) -> bool:
        return self in (InstanceStatus.APPLIED, InstanceStatus.FAILED, InstanceStatus.BLOCKED)


# Legal transitions of the per-instance state machine
TRANSITIONS = {
    InstanceStatus.PENDING: {InstanceStatus.MATERIALIZING, InstanceStatus.BLOCKED},
    InstanceStatus.MATERIALIZING: {InstanceStatus.APPLIED, InstanceStatus.FAILED},
    # Bootstrap runs after Applied and may still fail the instance
    InstanceStatus.APPLIED: {InstanceStatus.FAILED},
    InstanceStatus.FAILED: set(),
    InstanceStatus.BLOCKED: set(),
}


@dataclass
class Variable:
    name: str
    default: Any = None
    has_default: bool = False
    description: str = ""
    type: str = "any"           # string | number | bool | list | map | any


@dataclass
class FileTransfer:
    source: Expr                # Local path template
    destination: Expr           # Remote path template
    on_failure: str = "fail"    # fail | continue


@dataclass
class CommandBatch:
    commands: List[Expr]        # Executed in order, first non-zero exit aborts
    on_failure: str = "fail"


BootstrapAction = Union[FileTransfer, CommandBatch]


@dataclass
class ConnectionDescriptor:
    """Resolved connection settings; built after the owning instance is Applied."""
    host: str
    user: str
    protocol: str = "ssh"
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)   # Path to a key file
    timeout: float = 10.0


@dataclass
class Declaration:
    """A named resource template. Expands to `count` Instances."""
    type: str
    name: str
    count: Optional[Expr] = None                 # None means "exactly one, not a collection"
    attributes: Dict[str, Expr] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    connection: Dict[str, Expr] = field(default_factory=dict)
    bootstrap: List[BootstrapAction] = field(default_factory=list)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def has_count(self) -> bool:
        return self.count is not None


@dataclass
class OutputDeclaration:
    name: str
    value: Expr
    description: str = ""
    sensitive: bool = False


@dataclass
class Configuration:
    variables: Dict[str, Variable] = field(default_factory=dict)
    locals: Dict[str, Expr] = field(default_factory=dict)
    declarations: Dict[str, Declaration] = field(default_factory=dict)   # Keyed by address
    outputs: Dict[str, OutputDeclaration] = field(default_factory=dict)
    source: str = "<memory>"    # File the configuration was loaded from


@dataclass(frozen=True)
class Instance:
    """
    One concrete expansion of a Declaration. `context` already carries the
    variables, locals and count.index; resource state is layered on at apply.
    `planned` holds attributes that could be resolved without resource state.
    """
    declaration: Declaration
    index: Optional[int]
    context: BindingContext = field(compare=False, repr=False)
    planned: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def address(self) -> str:
        base = self.declaration.address
        return base if self.index is None else f"{base}[{self.index}]"


@dataclass
class InstanceResult:
    """Per-instance line of the status report."""
    address: str
    status: InstanceStatus = InstanceStatus.PENDING
    attributes: Dict[str, Any] = field(default_factory=dict)   # Resolved inputs sent to create
    identity: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)      # Provider-assigned attributes
    materialized: bool = False
    bootstrapped: bool = False
    noop: bool = False
    error: Optional[str] = None
    blocked_by: Optional[str] = None
    warnings: List[str] = field(default_factory=list)          # Tolerated bootstrap failures

    def state(self) -> Dict[str, Any]:
        """Attribute map other expressions see: inputs, then provider outputs, then id."""
        merged = dict(self.attributes)
        merged.update(self.outputs)
        merged["id"] = self.identity
        return merged
