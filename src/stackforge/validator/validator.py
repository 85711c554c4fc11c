#!/usr/bin/env python3
"""
STACKFORGE VALIDATOR - The Judge
--------------------------------
The Validator is the first safety gate of a run. It walks every expression
of a loaded Configuration and rejects, before anything is expanded or
created:

- references to undeclared resources, variables or locals
- `self` outside connection/bootstrap blocks, `count.index` without count
- count expressions that read resource state
- cycles among locals
- bootstrap blocks without a usable connection

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
from typing import Dict, List, Optional, Set

from stackforge.core.errors import (
    CardinalityError,
    ConfigurationError,
    CycleError,
    UnknownReferenceError,
    UnresolvedIdentifierError,
)
from stackforge.core.models import CommandBatch, Configuration, Declaration, FileTransfer
from stackforge.expressions import ast
from stackforge.expressions.functions import BUILTINS
from stackforge.planning.references import discover

# Standardized logging for audit trails
logger = logging.getLogger("stackforge.validator")

SUPPORTED_PROTOCOLS = ("ssh",)
CONNECTION_KEYS = {"type", "host", "user", "port", "password", "private_key", "timeout"}


class ConfigValidator:
    """
    Enforces referential integrity on a Configuration.
    `known_types`, when given, restricts declarations to resource types a
    provider is registered for.
    """

    def __init__(self, known_types: Optional[Set[str]] = None):
        self.known_types = known_types

    def validate(self, config: Configuration) -> List[str]:
        """Raises the first ConfigurationError found; returns non-fatal warnings."""
        self._check_local_cycles(config)
        used_vars: Set[str] = set()
        used_locals: Set[str] = set()

        for name, expr in config.locals.items():
            self._check_expr(config, expr, f"local.{name}", used_vars, used_locals,
                             allow_self=False, allow_count=False)

        for declaration in config.declarations.values():
            self._check_declaration(config, declaration, used_vars, used_locals)

        for name, output in config.outputs.items():
            self._check_expr(config, output.value, f"output.{name}", used_vars, used_locals,
                             allow_self=False, allow_count=False)

        warnings = [f"variable '{v}' is declared but never used"
                    for v in sorted(set(config.variables) - used_vars)]
        warnings += [f"local '{n}' is declared but never used"
                     for n in sorted(set(config.locals) - used_locals)]
        for warning in warnings:
            logger.warning(warning)
        return warnings

    def _check_declaration(self, config: Configuration, declaration: Declaration,
                           used_vars: Set[str], used_locals: Set[str]) -> None:
        path = declaration.address
        if self.known_types is not None and declaration.type not in self.known_types:
            raise ConfigurationError(f"no provider registered for resource type {declaration.type!r}", path)

        has_count = declaration.has_count
        if has_count:
            self._check_expr(config, declaration.count, f"{path}.count", used_vars, used_locals,
                             allow_self=False, allow_count=False)
            stateful = discover(declaration.count, config.locals)
            if stateful:
                raise CardinalityError(
                    f"count cannot depend on resource state ({stateful[0].address}); "
                    "only variables and locals are known before apply", f"{path}.count")

        for key, expr in declaration.attributes.items():
            self._check_expr(config, expr, f"{path}.attributes.{key}", used_vars, used_locals,
                             allow_self=False, allow_count=has_count)

        for dependency in declaration.depends_on:
            if dependency not in config.declarations:
                raise UnknownReferenceError(f"depends_on names undeclared resource {dependency!r}",
                                            f"{path}.depends_on")
            if dependency == path:
                raise CycleError([path, path], f"{path}.depends_on")

        for key, expr in declaration.connection.items():
            if key not in CONNECTION_KEYS:
                raise ConfigurationError(f"unknown connection setting {key!r}", f"{path}.connection")
            self._check_expr(config, expr, f"{path}.connection.{key}", used_vars, used_locals,
                             allow_self=True, allow_count=has_count)

        for i, action in enumerate(declaration.bootstrap):
            action_path = f"{path}.bootstrap[{i}]"
            if isinstance(action, FileTransfer):
                exprs = [action.source, action.destination]
            elif isinstance(action, CommandBatch):
                exprs = list(action.commands)
            else:
                raise ConfigurationError(f"unsupported bootstrap action {action!r}", action_path)
            for expr in exprs:
                self._check_expr(config, expr, action_path, used_vars, used_locals,
                                 allow_self=True, allow_count=has_count)

        if declaration.bootstrap:
            self._check_connection(declaration)

    def _check_connection(self, declaration: Declaration) -> None:
        path = f"{declaration.address}.connection"
        connection = declaration.connection
        for required in ("host", "user"):
            if required not in connection:
                raise ConfigurationError(f"bootstrap needs connection.{required}", path)
        protocol = connection.get("type")
        if protocol is not None:
            if not isinstance(protocol, ast.Literal) or protocol.value not in SUPPORTED_PROTOCOLS:
                shown = protocol.value if isinstance(protocol, ast.Literal) else "<expression>"
                raise ConfigurationError(f"unsupported connection type {shown!r}", path)

    def _check_expr(self, config: Configuration, expr: ast.Expr, path: str,
                    used_vars: Set[str], used_locals: Set[str],
                    allow_self: bool, allow_count: bool) -> None:
        for node in ast.walk(expr):
            if isinstance(node, ast.ResourceRef) and node.address not in config.declarations:
                raise UnknownReferenceError(f"reference to undeclared resource {node.address!r}", path)
            if isinstance(node, ast.VariableRef):
                if node.name not in config.variables:
                    raise UnresolvedIdentifierError(f"undeclared variable 'var.{node.name}'", path)
                used_vars.add(node.name)
            if isinstance(node, ast.LocalRef):
                if node.name not in config.locals:
                    raise UnresolvedIdentifierError(f"undeclared local 'local.{node.name}'", path)
                used_locals.add(node.name)
            if isinstance(node, ast.SelfRef) and not allow_self:
                raise UnresolvedIdentifierError("'self' is only available in connection and bootstrap blocks", path)
            if isinstance(node, ast.CountIndex) and not allow_count:
                raise UnresolvedIdentifierError("'count.index' used outside a declaration with count", path)
            if isinstance(node, ast.Call):
                if node.name not in BUILTINS:
                    raise UnresolvedIdentifierError(f"unknown function {node.name!r}", path)

    def _check_local_cycles(self, config: Configuration) -> None:
        """Depth-first search over local -> local edges with a recursion stack."""
        edges: Dict[str, List[str]] = {
            name: [n.name for n in ast.walk(expr) if isinstance(n, ast.LocalRef)]
            for name, expr in config.locals.items()
        }
        done: Set[str] = set()

        def visit(name: str, stack: List[str]) -> None:
            if name in stack:
                cycle = stack[stack.index(name):] + [name]
                raise CycleError([f"local.{n}" for n in cycle], f"local.{cycle[0]}")
            if name in done or name not in edges:
                return
            stack.append(name)
            for target in edges[name]:
                visit(target, stack)
            stack.pop()
            done.add(name)

        for name in sorted(edges):
            visit(name, [])
