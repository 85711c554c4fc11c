#!/usr/bin/env python3
"""
STACKFORGE CONFIG LOADER - YAML Intake
--------------------------------------
Reads a stackforge YAML document with ruamel.yaml and turns it into a
Configuration: every string becomes a parsed template, every list/map a
literal container of templates. Also resolves variable values from their
sources (default < environment < var-file < --var).

Author: Stackforge Team
Date: 2026-10-18
"""

import io
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ruamel.yaml import YAML, YAMLError

from stackforge.core.errors import ConfigurationError, VariableError
from stackforge.core.models import (
    CommandBatch,
    Configuration,
    Declaration,
    FileTransfer,
    OutputDeclaration,
    Variable,
)
from stackforge.expressions import ast
from stackforge.expressions.parser import parse_template

logger = logging.getLogger("stackforge.config")

ENV_PREFIX = "STACKFORGE_VAR_"
NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
VARIABLE_TYPES = ("string", "number", "bool", "list", "map", "any")
TOP_LEVEL_KEYS = ("variable", "locals", "resource", "output")


def _yaml() -> YAML:
    return YAML(typ="safe", pure=True)


def to_expr(value: Any, path: str) -> ast.Expr:
    """Converts a loaded YAML value into an expression tree."""
    try:
        if isinstance(value, str):
            return parse_template(value)
    except ConfigurationError as e:
        raise e.at(path)
    if isinstance(value, list):
        return ast.ListExpr(tuple(to_expr(v, f"{path}[{i}]") for i, v in enumerate(value)))
    if isinstance(value, dict):
        return ast.MapExpr(tuple(
            (ast.Literal(str(k)), to_expr(v, f"{path}.{k}")) for k, v in value.items()
        ))
    return ast.Literal(value)


def _mapping(value: Any, path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError("expected a mapping", path)
    return value


def _name(name: Any, path: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ConfigurationError(f"invalid name {name!r}", path)
    return name


class ConfigLoader:
    """
    Builds a Configuration from YAML text or a file path.
    """

    def load_file(self, path: str) -> Configuration:
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8-sig")
        except OSError as e:
            raise ConfigurationError(f"cannot read configuration: {e}", str(file_path))
        config = self.load_text(text)
        config.source = str(file_path)
        return config

    def load_text(self, text: str) -> Configuration:
        try:
            document = _yaml().load(io.StringIO(text))
        except YAMLError as e:
            raise ConfigurationError(f"invalid YAML: {e}")
        document = _mapping(document, "<root>")
        unknown = set(document) - set(TOP_LEVEL_KEYS)
        if unknown:
            raise ConfigurationError(f"unknown top-level keys: {', '.join(sorted(map(str, unknown)))}")

        config = Configuration()
        for name, body in _mapping(document.get("variable"), "variable").items():
            config.variables[_name(name, "variable")] = self._variable(name, body)
        for name, value in _mapping(document.get("locals"), "locals").items():
            config.locals[_name(name, "locals")] = to_expr(value, f"local.{name}")
        for type_name, group in _mapping(document.get("resource"), "resource").items():
            _name(type_name, "resource")
            for name, body in _mapping(group, f"resource.{type_name}").items():
                declaration = self._declaration(type_name, _name(name, f"resource.{type_name}"), body)
                config.declarations[declaration.address] = declaration
        for name, body in _mapping(document.get("output"), "output").items():
            config.outputs[_name(name, "output")] = self._output(name, body)

        logger.debug(f"Loaded {len(config.declarations)} declarations, {len(config.variables)} variables, "
                     f"{len(config.outputs)} outputs")
        return config

    def _variable(self, name: str, body: Any) -> Variable:
        path = f"variable.{name}"
        body = _mapping(body, path)
        var_type = body.get("type", "any")
        if var_type not in VARIABLE_TYPES:
            raise VariableError(f"unsupported type {var_type!r}", path)
        return Variable(
            name=name,
            default=body.get("default"),
            has_default="default" in body,
            description=str(body.get("description", "")),
            type=var_type,
        )

    def _declaration(self, type_name: str, name: str, body: Any) -> Declaration:
        path = f"{type_name}.{name}"
        body = _mapping(body, path)
        allowed = {"count", "attributes", "depends_on", "connection", "bootstrap"}
        unknown = set(body) - allowed
        if unknown:
            raise ConfigurationError(f"unknown keys: {', '.join(sorted(map(str, unknown)))}", path)

        depends_on = body.get("depends_on", [])
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigurationError("depends_on must be a list of addresses", f"{path}.depends_on")

        return Declaration(
            type=type_name,
            name=name,
            count=to_expr(body["count"], f"{path}.count") if "count" in body else None,
            attributes={
                key: to_expr(value, f"{path}.attributes.{key}")
                for key, value in _mapping(body.get("attributes"), f"{path}.attributes").items()
            },
            depends_on=list(depends_on),
            connection={
                key: to_expr(value, f"{path}.connection.{key}")
                for key, value in _mapping(body.get("connection"), f"{path}.connection").items()
            },
            bootstrap=self._bootstrap(body.get("bootstrap") or [], f"{path}.bootstrap"),
        )

    def _bootstrap(self, items: Any, path: str) -> List[Any]:
        if not isinstance(items, list):
            raise ConfigurationError("bootstrap must be a list of actions", path)
        actions = []
        for i, item in enumerate(items):
            item_path = f"{path}[{i}]"
            item = _mapping(item, item_path)
            on_failure = item.get("on_failure", "fail")
            if on_failure not in ("fail", "continue"):
                raise ConfigurationError(f"on_failure must be 'fail' or 'continue', got {on_failure!r}", item_path)
            if "file" in item:
                spec = _mapping(item["file"], f"{item_path}.file")
                if "source" not in spec or "destination" not in spec:
                    raise ConfigurationError("file action needs source and destination", item_path)
                actions.append(FileTransfer(
                    source=to_expr(spec["source"], f"{item_path}.file.source"),
                    destination=to_expr(spec["destination"], f"{item_path}.file.destination"),
                    on_failure=on_failure,
                ))
            elif "commands" in item:
                commands = item["commands"]
                if isinstance(commands, str):
                    commands = [commands]
                if not isinstance(commands, list):
                    raise ConfigurationError("commands must be a list", item_path)
                actions.append(CommandBatch(
                    commands=[to_expr(c, f"{item_path}.commands[{n}]") for n, c in enumerate(commands)],
                    on_failure=on_failure,
                ))
            else:
                raise ConfigurationError("bootstrap action must be 'file' or 'commands'", item_path)
        return actions

    def _output(self, name: str, body: Any) -> OutputDeclaration:
        path = f"output.{name}"
        body = _mapping(body, path)
        if "value" not in body:
            raise ConfigurationError("output needs a value", path)
        return OutputDeclaration(
            name=name,
            value=to_expr(body["value"], f"{path}.value"),
            description=str(body.get("description", "")),
            sensitive=bool(body.get("sensitive", False)),
        )


def parse_raw_value(text: str) -> Any:
    """Reads an externally supplied variable value ('3', 'true', '[a, b]') as a YAML flow value."""
    try:
        return _yaml().load(io.StringIO(text))
    except YAMLError:
        return text


def load_var_file(path: str) -> Dict[str, Any]:
    try:
        text = Path(path).read_text(encoding="utf-8-sig")
        values = _yaml().load(io.StringIO(text))
    except (OSError, YAMLError) as e:
        raise VariableError(f"cannot load variable file: {e}", path)
    return _mapping(values, path)


def _coerce(variable: Variable, value: Any, from_text: bool) -> Any:
    path = f"var.{variable.name}"
    if variable.type == "string":
        if isinstance(value, (dict, list)):
            raise VariableError("expected a string", path)
        if isinstance(value, bool):
            return "true" if value else "false"
        return "" if value is None else str(value)
    if from_text and isinstance(value, str):
        value = parse_raw_value(value)
    expected = {"number": (int, float), "bool": (bool,), "list": (list,), "map": (dict,)}.get(variable.type)
    if expected is None:
        return value
    if not isinstance(value, expected) or (variable.type == "number" and isinstance(value, bool)):
        raise VariableError(f"expected a {variable.type}, got {value!r}", path)
    return value


def resolve_variables(config: Configuration,
                      overrides: Optional[Mapping[str, Any]] = None,
                      var_file_values: Optional[Mapping[str, Any]] = None,
                      environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Final variable values. Precedence: default < STACKFORGE_VAR_<name> <
    var-file < explicit overrides. Strings coming from the environment or
    the command line are coerced to the declared type.
    """
    environ = os.environ if environ is None else environ
    overrides = overrides or {}
    var_file_values = var_file_values or {}

    for name in list(overrides) + list(var_file_values):
        if name not in config.variables:
            raise VariableError("value supplied for undeclared variable", f"var.{name}")

    resolved = {}
    for name, variable in config.variables.items():
        if name in overrides:
            value, from_text = overrides[name], isinstance(overrides[name], str)
        elif name in var_file_values:
            value, from_text = var_file_values[name], False
        elif ENV_PREFIX + name in environ:
            value, from_text = environ[ENV_PREFIX + name], True
        elif variable.has_default:
            value, from_text = variable.default, False
        else:
            raise VariableError("no value supplied and no default", f"var.{name}")
        resolved[name] = _coerce(variable, value, from_text)
    return resolved
