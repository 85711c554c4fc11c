import pytest

from stackforge.config.loader import ConfigLoader, load_var_file, resolve_variables
from stackforge.config.settings import EngineSettings
from stackforge.core.errors import (
    CardinalityError,
    ConfigurationError,
    CycleError,
    UnknownReferenceError,
    UnresolvedIdentifierError,
    VariableError,
)
from stackforge.core.models import CommandBatch, FileTransfer
from stackforge.validator.validator import ConfigValidator

VARIABLES_YAML = """
variable:
  env: {default: dev}
  replicas: {default: 1, type: number}
  zones: {type: list, default: [a]}
  token: {description: no default}
resource:
  thing:
    one:
      attributes:
        env: '${var.env}'
        replicas: '${var.replicas}'
        zones: '${var.zones}'
        token: '${var.token}'
"""


def load(text):
    return ConfigLoader().load_text(text)


def test_loader_builds_declarations(stack_yaml):
    config = load(stack_yaml)
    assert list(config.declarations) == ["network.net", "subnet.sub", "server.srv"]
    assert config.variables["env"].default == "dev"
    assert "sub_count" in config.locals
    assert config.declarations["subnet.sub"].has_count
    assert not config.declarations["network.net"].has_count
    assert set(config.outputs) == {"ids", "net_id", "srv_id"}


def test_loader_parses_bootstrap_actions():
    config = load("""
resource:
  server:
    box:
      connection: {host: 1.2.3.4, user: root}
      bootstrap:
        - file: {source: a.sh, destination: /tmp/a.sh}
        - commands: [echo hi, echo bye]
          on_failure: continue
""")
    actions = config.declarations["server.box"].bootstrap
    assert isinstance(actions[0], FileTransfer)
    assert isinstance(actions[1], CommandBatch)
    assert len(actions[1].commands) == 2
    assert actions[1].on_failure == "continue"


@pytest.mark.parametrize("text", [
    "resources: {}",
    "resource: {thing: {a: {colour: red}}}",
    "resource: {thing: {bad-name: {}}}",
    "resource: {thing: {a: {bootstrap: [{reboot: true}]}}}",
    "resource: {thing: {a: {bootstrap: [{commands: [x], on_failure: maybe}]}}}",
    "output: {x: {description: missing value}}",
    "resource: {thing: {a: {attributes: {x: '${1 +}'}}}}",
    "resource: [not, a, mapping]",
])
def test_loader_rejects_malformed_documents(text):
    with pytest.raises(ConfigurationError):
        load(text)


def test_variable_precedence():
    """PRECEDENCE TEST: default < environment < var-file < explicit override."""
    config = load(VARIABLES_YAML)
    environ = {"STACKFORGE_VAR_env": "staging", "STACKFORGE_VAR_replicas": "4", "STACKFORGE_VAR_token": "t0"}

    values = resolve_variables(config, environ=environ)
    assert values["env"] == "staging"
    assert values["replicas"] == 4
    assert values["zones"] == ["a"]

    values = resolve_variables(config, var_file_values={"env": "qa"}, environ=environ)
    assert values["env"] == "qa"

    values = resolve_variables(config, {"env": "prod", "zones": "[a, b]"}, {"env": "qa"}, environ)
    assert values["env"] == "prod"
    assert values["zones"] == ["a", "b"]


def test_missing_variable_without_default():
    with pytest.raises(VariableError) as info:
        resolve_variables(load(VARIABLES_YAML), environ={})
    assert info.value.path == "var.token"


def test_undeclared_override_rejected():
    with pytest.raises(VariableError):
        resolve_variables(load(VARIABLES_YAML), {"token": "x", "colour": "red"}, environ={})


def test_typed_variable_coercion_failure():
    with pytest.raises(VariableError):
        resolve_variables(load(VARIABLES_YAML), {"token": "x", "replicas": "many"}, environ={})


def test_var_file(tmp_path):
    path = tmp_path / "prod.yaml"
    path.write_text("env: prod\nreplicas: 3\n")
    assert load_var_file(str(path)) == {"env": "prod", "replicas": 3}
    with pytest.raises(VariableError):
        load_var_file(str(tmp_path / "missing.yaml"))


def test_settings_validation():
    assert EngineSettings().parallelism == 10
    with pytest.raises(ValueError):
        EngineSettings(parallelism=0)
    with pytest.raises(ValueError):
        EngineSettings(connect_attempts=0)


# --- validator ----------------------------------------------------------


@pytest.mark.parametrize("text, error, path", [
    ("resource: {thing: {a: {attributes: {x: '${thing.ghost.id}'}}}}",
     UnknownReferenceError, "thing.a.attributes.x"),
    ("resource: {thing: {a: {depends_on: [thing.ghost]}}}",
     UnknownReferenceError, "thing.a.depends_on"),
    ("resource: {thing: {a: {attributes: {x: '${var.nope}'}}}}",
     UnresolvedIdentifierError, "thing.a.attributes.x"),
    ("resource: {thing: {a: {attributes: {x: '${self.id}'}}}}",
     UnresolvedIdentifierError, "thing.a.attributes.x"),
    ("resource: {thing: {a: {attributes: {x: '${count.index}'}}}}",
     UnresolvedIdentifierError, "thing.a.attributes.x"),
    ("resource: {thing: {a: {attributes: {x: '${nosuch(1)}'}}}}",
     UnresolvedIdentifierError, "thing.a.attributes.x"),
    ("resource: {thing: {a: {}, b: {count: '${length(thing.a[*].id)}'}}}",
     CardinalityError, "thing.b.count"),
    ("locals: {a: '${local.b}', b: '${local.a}'}",
     CycleError, "local.a"),
    ("resource: {thing: {a: {bootstrap: [{commands: [ls]}]}}}",
     ConfigurationError, "thing.a.connection"),
    ("resource: {thing: {a: {connection: {host: h, user: u, type: winrm}, bootstrap: [{commands: [ls]}]}}}",
     ConfigurationError, "thing.a.connection"),
    ("resource: {thing: {a: {connection: {host: h, user: u, colour: red}}}}",
     ConfigurationError, "thing.a.connection"),
])
def test_validator_rejects(text, error, path):
    with pytest.raises(error) as info:
        ConfigValidator().validate(load(text))
    assert info.value.path == path


def test_validator_reports_unused_names():
    config = load("""
variable:
  unused: {default: 1}
locals:
  spare: 2
resource:
  thing:
    a: {}
""")
    warnings = ConfigValidator().validate(config)
    assert warnings == ["variable 'unused' is declared but never used",
                        "local 'spare' is declared but never used"]


def test_validator_restricts_known_types():
    with pytest.raises(ConfigurationError) as info:
        ConfigValidator(known_types={"network"}).validate(load("resource: {server: {a: {}}}"))
    assert "no provider registered" in str(info.value)
