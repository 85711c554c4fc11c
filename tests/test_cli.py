import pytest
from rich.text import Text

from conftest import FailingProvider, FakeSessionFactory, RecordingProvider
from stackforge.cli.formatter import StackFormatter
from stackforge.cli.main import EXIT_CONFIG, EXIT_OK, EXIT_PARTIAL, StackforgeCLI
from stackforge.core.engine import ProvisioningEngine
from stackforge.providers.base import ProviderRegistry


@pytest.fixture
def stack_file(tmp_path, stack_yaml):
    path = tmp_path / "stack.yaml"
    path.write_text(stack_yaml)
    return path


def engine_factory(registry):
    def build(settings):
        return ProvisioningEngine(registry=registry, session_factory=FakeSessionFactory(), settings=settings)
    return build


def test_validate_and_plan(stack_file, capsys):
    cli = StackforgeCLI()
    assert cli.run(["validate", str(stack_file)]) == EXIT_OK
    assert cli.run(["plan", str(stack_file), "--var", "env=prod"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "Configuration valid" in out
    assert "subnet.sub[1]" in out


def test_plan_json(stack_file, capsys):
    assert StackforgeCLI().run(["plan", str(stack_file), "--json"]) == EXIT_OK
    out = capsys.readouterr().out
    assert '"depth": 3' in out
    assert "server.srv" in out


def test_apply_succeeds_with_default_provider(stack_file, capsys):
    assert StackforgeCLI().run(["apply", str(stack_file), "--parallelism", "2"]) == EXIT_OK
    assert "SUCCESS" in capsys.readouterr().out


def test_apply_partial_failure_exit_status(stack_file, capsys):
    registry = ProviderRegistry(default=RecordingProvider()).register("server", FailingProvider())
    cli = StackforgeCLI(engine_factory=engine_factory(registry))
    assert cli.run(["apply", str(stack_file), "--json"]) == EXIT_PARTIAL
    out = capsys.readouterr().out
    assert "PARTIAL" in out
    assert "srv_id" in out


@pytest.mark.parametrize("argv", [
    ["plan", "{path}", "--var", "colour=red"],
    ["plan", "{missing}"],
    ["apply", "{path}", "--parallelism", "0"],
])
def test_configuration_errors_exit_2(stack_file, tmp_path, argv):
    argv = [a.format(path=stack_file, missing=tmp_path / "nope.yaml") for a in argv]
    assert StackforgeCLI().run(argv) == EXIT_CONFIG


def test_cycle_exits_2(tmp_path, capsys):
    path = tmp_path / "cycle.yaml"
    path.write_text("resource:\n  thing:\n    a: {attributes: {p: '${thing.b.id}'}}\n"
                    "    b: {attributes: {p: '${thing.a.id}'}}\n")
    assert StackforgeCLI().run(["apply", str(path)]) == EXIT_CONFIG
    assert "cycle" in capsys.readouterr().out.lower()


def test_no_arguments_prints_help(capsys):
    assert StackforgeCLI().run([]) == EXIT_OK
    assert "stackforge" in capsys.readouterr().out


def test_summary_panel_values_line_up():
    summary = {"status": "PARTIAL", "total_instances": 4, "applied": 2, "unchanged": 0,
               "failed": 1, "blocked": 1, "duration_seconds": 0.12}
    panel = StackFormatter().summary_panel(summary)
    rows = [line for line in Text.from_markup(panel.renderable).plain.splitlines() if ":" in line]
    assert len(rows) == 6
    columns = {len(row) - len(row.split(":", 1)[1].lstrip()) for row in rows}
    assert len(columns) == 1
